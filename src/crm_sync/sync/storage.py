"""
Sync Storage Manager

This module provides storage for the sync core: integrations (the token store),
the external-resource link table and the internal records that sync reads and
writes (jobs, customers, email threads, reviews).
"""

import asyncio
import json
import logging
import os
import re
from typing import Any, Dict, List, Optional, Set, Tuple, Type, TypeVar

import redis.asyncio as redis
from pydantic import BaseModel
from redis.exceptions import ConnectionError as RedisConnectionError, RedisError
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from crm_sync.sync.architecture import (
    Customer, EmailThread, EntityType, ExternalLink, Integration, Job, LinkStatus,
    Provider, Review, utcnow
)
from crm_sync.utils.config import settings

# Set up logging
logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

# Locks for file-based storage, keyed by storage path and lock name
_local_locks: Dict[str, asyncio.Lock] = {}

ALL_INTEGRATIONS_KEY = "crm:integrations"


def _integration_key(integration_id: str) -> str:
    return f"crm:integration:{integration_id}"


def _user_index_key(user_id: str, kind: str) -> str:
    return f"crm:user:{user_id}:{kind}"


def _account_key(user_id: str, provider: str, account: str) -> str:
    return f"crm:integration-account:{user_id}:{provider}:{account.lower()}"


def _channel_key(channel_id: str) -> str:
    return f"crm:watch:{channel_id}"


def _mailbox_key(provider: str, email_address: str) -> str:
    return f"crm:mailbox:{provider}:{email_address.lower()}"


def _link_key(integration_id: str, entity_type: str, entity_id: str) -> str:
    return f"crm:link:{integration_id}:{entity_type}:{entity_id}"


def _external_key(integration_id: str, external_id: str) -> str:
    return f"crm:link-external:{integration_id}:{external_id}"


def _integration_links_key(integration_id: str) -> str:
    return f"crm:integration:{integration_id}:links"


def _external_ids_key(integration_id: str) -> str:
    return f"crm:integration:{integration_id}:external-ids"


def _entity_links_key(entity_type: str, entity_id: str) -> str:
    return f"crm:entity:{entity_type}:{entity_id}:links"


def _customer_email_key(user_id: str, email: str) -> str:
    return f"crm:customer-email:{user_id}:{email.strip().lower()}"


class SyncStorageManager:
    """
    Manages storage for sync data.
    Supports both Redis and file-based storage.
    """

    def __init__(self, use_redis: Optional[bool] = None, storage_path: Optional[str] = None):
        """Initialize the storage manager"""
        if use_redis is None:
            use_redis = settings.USE_REDIS
        self.use_redis = bool(use_redis and settings.REDIS_HOST)
        self.redis = None
        self.file_storage_path = storage_path or settings.STORAGE_PATH

        # Create storage directory if it doesn't exist
        if not self.use_redis:
            os.makedirs(self.file_storage_path, exist_ok=True)

    async def initialize(self):
        """Initialize storage connections"""
        if self.use_redis:
            try:
                self.redis = await self._connect()
                logger.debug("Redis connection established for sync storage")
            except RedisError as e:
                logger.error(f"Failed to connect to Redis: {e}")
                self.use_redis = False
                self.redis = None
                os.makedirs(self.file_storage_path, exist_ok=True)
                logger.info("Falling back to file-based storage")

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=4),
        retry=retry_if_exception_type(RedisConnectionError),
        reraise=True
    )
    async def _connect(self):
        client = redis.from_url(
            f"redis://{settings.REDIS_HOST}:{settings.REDIS_PORT}/{settings.REDIS_DB}",
            password=settings.REDIS_PASSWORD or None,
            encoding="utf-8",
            decode_responses=True
        )
        try:
            await client.ping()
        except RedisError:
            await client.aclose()
            raise
        return client

    async def close(self):
        """Close storage connections"""
        if self.redis:
            await self.redis.aclose()
            self.redis = None

    def lock(self, name: str):
        """
        Mutual-exclusion point shared by every request using this store.
        Redis locks are cross-process; file storage locks are per process.
        """
        if self.redis:
            return self.redis.lock(
                f"crm:lock:{name}",
                timeout=settings.LOCK_TIMEOUT_SECONDS,
                blocking_timeout=settings.LOCK_TIMEOUT_SECONDS
            )
        key = f"{os.path.abspath(self.file_storage_path)}:{name}"
        return _local_locks.setdefault(key, asyncio.Lock())

    # Key/value primitives

    def _path(self, key: str) -> str:
        safe = re.sub(r"[^A-Za-z0-9_.@-]", "_", key)
        return os.path.join(self.file_storage_path, f"{safe}.json")

    async def _read(self, key: str) -> Any:
        if self.redis:
            raw = await self.redis.get(key)
            return json.loads(raw) if raw else None

        path = self._path(key)
        if os.path.exists(path):
            with open(path, "r") as f:
                return json.load(f)
        return None

    def _write_file(self, key: str, value: Any) -> None:
        path = self._path(key)
        tmp_path = f"{path}.tmp"
        with open(tmp_path, "w") as f:
            json.dump(value, f, indent=2, default=str)
        os.replace(tmp_path, path)

    async def _write(self, key: str, value: Any) -> None:
        if self.redis:
            await self.redis.set(key, json.dumps(value, default=str))
        else:
            self._write_file(key, value)

    async def _write_if_absent(self, key: str, value: Any) -> bool:
        """Write only if the key does not exist yet. Returns True if written."""
        if self.redis:
            return bool(await self.redis.set(key, json.dumps(value, default=str), nx=True))

        if os.path.exists(self._path(key)):
            return False
        self._write_file(key, value)
        return True

    async def _remove(self, *keys: str) -> None:
        if not keys:
            return
        if self.redis:
            await self.redis.delete(*keys)
            return
        for key in keys:
            path = self._path(key)
            if os.path.exists(path):
                os.remove(path)

    async def _members(self, key: str) -> Set[str]:
        if self.redis:
            return set(await self.redis.smembers(key))
        return set(await self._read(key) or [])

    async def _add_member(self, key: str, member: str) -> None:
        if self.redis:
            await self.redis.sadd(key, member)
            return
        members = await self._members(key)
        if member not in members:
            members.add(member)
            self._write_file(key, sorted(members))

    async def _remove_member(self, key: str, member: str) -> None:
        if self.redis:
            await self.redis.srem(key, member)
            return
        members = await self._members(key)
        if member in members:
            members.discard(member)
            self._write_file(key, sorted(members))

    async def _load(self, key: str, model: Type[ModelT]) -> Optional[ModelT]:
        data = await self._read(key)
        return model.model_validate(data) if data else None

    async def _store(self, key: str, record: BaseModel) -> None:
        await self._write(key, record.model_dump(mode="json"))

    # Integrations (token store)

    async def get_integration(self, integration_id: str) -> Optional[Integration]:
        return await self._load(_integration_key(integration_id), Integration)

    async def save_integration(self, integration: Integration) -> Integration:
        """Persist an integration and keep its lookup indexes current"""
        previous = await self.get_integration(integration.id)
        integration.updated_at = utcnow()
        await self._store(_integration_key(integration.id), integration)
        await self._add_member(ALL_INTEGRATIONS_KEY, integration.id)
        await self._add_member(_user_index_key(integration.user_id, "integrations"), integration.id)

        if integration.email_address:
            await self._add_member(
                _mailbox_key(integration.provider.value, integration.email_address), integration.id
            )

        if previous and previous.watch_channel_id and previous.watch_channel_id != integration.watch_channel_id:
            await self._remove(_channel_key(previous.watch_channel_id))
        if integration.watch_channel_id:
            await self._write(_channel_key(integration.watch_channel_id), integration.id)

        return integration

    async def update_integration(self, integration: Integration, **fields: Any) -> Integration:
        """
        Apply a partial update on top of the latest stored record, so concurrent
        writers (token refresh, webhook bookkeeping) do not overwrite each other.
        The caller's object receives the same field values.
        """
        current = await self.get_integration(integration.id) or integration
        for name, value in fields.items():
            setattr(current, name, value)
            setattr(integration, name, value)
        return await self.save_integration(current)

    async def upsert_integration(self, integration: Integration) -> Integration:
        """
        Create the integration, or refresh the credentials of the existing one for
        the same (user, provider, account).
        """
        account = integration.email_address or integration.resource_id or ""
        account_key = _account_key(integration.user_id, integration.provider.value, account)

        async with self.lock(f"integration-account:{integration.user_id}:{integration.provider.value}:{account.lower()}"):
            existing_id = await self._read(account_key)
            existing = await self.get_integration(existing_id) if existing_id else None

            if existing:
                existing.access_token = integration.access_token
                existing.refresh_token = integration.refresh_token or existing.refresh_token
                existing.token_expiry = integration.token_expiry
                existing.sync_enabled = True
                existing.resource_id = existing.resource_id or integration.resource_id
                logger.info(f"Updated credentials for {existing.provider.value} integration {existing.id}")
                return await self.save_integration(existing)

            await self._write(account_key, integration.id)
            logger.info(f"Created {integration.provider.value} integration {integration.id} for user {integration.user_id}")
            return await self.save_integration(integration)

    async def list_integrations(
        self,
        user_id: Optional[str] = None,
        provider: Optional[Provider] = None
    ) -> List[Integration]:
        index_key = _user_index_key(user_id, "integrations") if user_id else ALL_INTEGRATIONS_KEY
        integrations = []
        for integration_id in await self._members(index_key):
            integration = await self.get_integration(integration_id)
            if integration and (provider is None or integration.provider == provider):
                integrations.append(integration)
        return sorted(integrations, key=lambda i: i.created_at)

    async def find_integration(
        self,
        user_id: str,
        provider: Provider,
        sync_enabled: bool = True
    ) -> Optional[Integration]:
        for integration in await self.list_integrations(user_id, provider):
            if not sync_enabled or integration.sync_enabled:
                return integration
        return None

    async def find_integration_by_channel(self, channel_id: str) -> Optional[Integration]:
        integration_id = await self._read(_channel_key(channel_id))
        return await self.get_integration(integration_id) if integration_id else None

    async def find_integration_by_mailbox(self, provider: Provider, email_address: str) -> Optional[Integration]:
        for integration_id in sorted(await self._members(_mailbox_key(provider.value, email_address))):
            integration = await self.get_integration(integration_id)
            if integration and integration.provider == provider and integration.sync_enabled:
                return integration
        return None

    async def delete_integration(self, integration: Integration) -> None:
        """Hard-delete an integration together with its links"""
        for link in await self.list_links(integration.id):
            await self.delete_link(link)

        account = integration.email_address or integration.resource_id or ""
        keys = [
            _integration_key(integration.id),
            _account_key(integration.user_id, integration.provider.value, account),
            _integration_links_key(integration.id),
            _external_ids_key(integration.id),
        ]
        if integration.watch_channel_id:
            keys.append(_channel_key(integration.watch_channel_id))
        await self._remove(*keys)

        await self._remove_member(ALL_INTEGRATIONS_KEY, integration.id)
        await self._remove_member(_user_index_key(integration.user_id, "integrations"), integration.id)
        if integration.email_address:
            await self._remove_member(
                _mailbox_key(integration.provider.value, integration.email_address), integration.id
            )
        logger.info(f"Deleted {integration.provider.value} integration {integration.id}")

    # External-resource links

    async def get_link(self, integration_id: str, entity_type: EntityType, entity_id: str) -> Optional[ExternalLink]:
        return await self._load(_link_key(integration_id, entity_type.value, entity_id), ExternalLink)

    async def get_link_by_external_id(self, integration_id: str, external_id: str) -> Optional[ExternalLink]:
        link_key = await self._read(_external_key(integration_id, external_id))
        return await self._load(link_key, ExternalLink) if link_key else None

    async def claim_link(
        self,
        integration_id: str,
        entity_type: EntityType,
        entity_id: str
    ) -> Tuple[ExternalLink, bool]:
        """
        Atomically create a PENDING link for (entity, integration).
        Returns the link and whether this call created it.
        """
        key = _link_key(integration_id, entity_type.value, entity_id)
        link = ExternalLink(integration_id=integration_id, entity_type=entity_type, entity_id=entity_id)

        if await self._write_if_absent(key, link.model_dump(mode="json")):
            await self._add_member(_integration_links_key(integration_id), key)
            await self._add_member(_entity_links_key(entity_type.value, entity_id), key)
            return link, True

        return await self._load(key, ExternalLink), False

    async def link_external(self, link: ExternalLink, external_id: str) -> ExternalLink:
        """Record the provider-side ID of a link and mark it LINKED"""
        key = _link_key(link.integration_id, link.entity_type.value, link.entity_id)
        if link.external_id and link.external_id != external_id:
            await self._remove(_external_key(link.integration_id, link.external_id))
            await self._remove_member(_external_ids_key(link.integration_id), link.external_id)

        link.external_id = external_id
        link.status = LinkStatus.LINKED
        link.updated_at = utcnow()
        await self._store(key, link)
        await self._write(_external_key(link.integration_id, external_id), key)
        await self._add_member(_external_ids_key(link.integration_id), external_id)
        await self._add_member(_integration_links_key(link.integration_id), key)
        await self._add_member(_entity_links_key(link.entity_type.value, link.entity_id), key)
        return link

    async def save_link(self, link: ExternalLink) -> ExternalLink:
        link.updated_at = utcnow()
        await self._store(_link_key(link.integration_id, link.entity_type.value, link.entity_id), link)
        return link

    async def list_links(
        self,
        integration_id: str,
        entity_type: Optional[EntityType] = None,
        status: Optional[LinkStatus] = None
    ) -> List[ExternalLink]:
        links = []
        for key in await self._members(_integration_links_key(integration_id)):
            link = await self._load(key, ExternalLink)
            if link is None:
                continue
            if entity_type is not None and link.entity_type != entity_type:
                continue
            if status is not None and link.status != status:
                continue
            links.append(link)
        return sorted(links, key=lambda link: link.created_at)

    async def links_for_entity(self, entity_type: EntityType, entity_id: str) -> List[ExternalLink]:
        links = []
        for key in await self._members(_entity_links_key(entity_type.value, entity_id)):
            link = await self._load(key, ExternalLink)
            if link:
                links.append(link)
        return links

    async def linked_external_ids(self, integration_id: str) -> Set[str]:
        """Provider IDs of every resource mirrored from an internal entity"""
        return await self._members(_external_ids_key(integration_id))

    async def delete_link(self, link: ExternalLink) -> None:
        key = _link_key(link.integration_id, link.entity_type.value, link.entity_id)
        await self._remove(key)
        if link.external_id:
            await self._remove(_external_key(link.integration_id, link.external_id))
            await self._remove_member(_external_ids_key(link.integration_id), link.external_id)
        await self._remove_member(_integration_links_key(link.integration_id), key)
        await self._remove_member(_entity_links_key(link.entity_type.value, link.entity_id), key)

    # Internal records

    async def _save_user_record(self, kind: str, record: BaseModel) -> None:
        await self._store(f"crm:{kind}:{record.id}", record)
        await self._add_member(_user_index_key(record.user_id, kind), record.id)

    async def _list_user_records(self, kind: str, user_id: str, model: Type[ModelT]) -> List[ModelT]:
        records = []
        for record_id in sorted(await self._members(_user_index_key(user_id, kind))):
            record = await self._load(f"crm:{kind}:{record_id}", model)
            if record:
                records.append(record)
        return records

    async def _delete_user_record(self, kind: str, record: BaseModel) -> None:
        await self._remove(f"crm:{kind}:{record.id}")
        await self._remove_member(_user_index_key(record.user_id, kind), record.id)

    async def save_job(self, job: Job) -> Job:
        await self._save_user_record("job", job)
        return job

    async def get_job(self, job_id: str) -> Optional[Job]:
        return await self._load(f"crm:job:{job_id}", Job)

    async def list_jobs(self, user_id: str) -> List[Job]:
        return await self._list_user_records("job", user_id, Job)

    async def delete_job(self, job: Job) -> None:
        await self._delete_user_record("job", job)
        await self._remove(_entity_links_key(EntityType.JOB.value, job.id))

    async def save_customer(self, customer: Customer) -> Customer:
        previous = await self.get_customer(customer.id)
        if previous and previous.email and previous.email != customer.email:
            await self._remove(_customer_email_key(customer.user_id, previous.email))
        await self._save_user_record("customer", customer)
        if customer.email:
            await self._write(_customer_email_key(customer.user_id, customer.email), customer.id)
        return customer

    async def get_customer(self, customer_id: str) -> Optional[Customer]:
        return await self._load(f"crm:customer:{customer_id}", Customer)

    async def find_customer_by_email(self, user_id: str, email: str) -> Optional[Customer]:
        """Case-insensitive customer lookup by email address"""
        if not email:
            return None
        customer_id = await self._read(_customer_email_key(user_id, email))
        return await self.get_customer(customer_id) if customer_id else None

    async def save_email_thread(self, thread: EmailThread) -> EmailThread:
        await self._save_user_record("email_thread", thread)
        return thread

    async def get_email_thread(self, thread_id: str) -> Optional[EmailThread]:
        return await self._load(f"crm:email_thread:{thread_id}", EmailThread)

    async def list_email_threads(self, user_id: str, integration_id: Optional[str] = None) -> List[EmailThread]:
        threads = await self._list_user_records("email_thread", user_id, EmailThread)
        if integration_id:
            threads = [t for t in threads if t.integration_id == integration_id]
        return threads

    async def save_review(self, review: Review) -> Review:
        await self._save_user_record("review", review)
        return review

    async def get_review(self, review_id: str) -> Optional[Review]:
        return await self._load(f"crm:review:{review_id}", Review)

    async def list_reviews(self, user_id: str) -> List[Review]:
        return await self._list_user_records("review", user_id, Review)
