#!/usr/bin/env python3
"""
Helper script to run the CRM sync service.
Install the project first (pip install -e .) so the crm_sync package is importable.
"""

import os

import uvicorn

if __name__ == "__main__":
    uvicorn.run(
        "crm_sync.main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8008")),
        reload=os.getenv("RELOAD", "false").lower() == "true"
    )
