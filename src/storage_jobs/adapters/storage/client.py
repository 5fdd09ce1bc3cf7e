"""S3 client construction and the single call path used by the S3 adapter."""
import asyncio
import logging
from functools import lru_cache, partial
from typing import Any, Optional

import boto3
import botocore.session
from botocore.config import Config
from botocore.credentials import (
    AssumeRoleCredentialFetcher,
    CredentialProvider,
    DeferredRefreshableCredentials,
)

from storage_jobs.cancellation import CancellationToken
from storage_jobs.errors import StorageBackendError
from storage_jobs.settings import get_settings

logger = logging.getLogger(__name__)


def create_agent(max_sockets: Optional[int] = None) -> Config:
    """Client config with a bounded keep-alive connection pool."""
    return Config(
        max_pool_connections=max_sockets or get_settings().storage_s3_max_sockets,
        tcp_keepalive=True,
        retries={"mode": "standard"},
    )


@lru_cache()
def get_default_agent() -> Config:
    """Process-wide pool config shared by every disk that doesn't bring its own."""
    return create_agent()


class AssumeRoleProvider(CredentialProvider):
    """Temporary credentials for a role, fetched on first use and renewed before they expire."""

    METHOD = "storage-assume-role"

    def __init__(self, fetcher: AssumeRoleCredentialFetcher):
        super().__init__()
        self.fetcher = fetcher

    def load(self) -> DeferredRefreshableCredentials:
        return DeferredRefreshableCredentials(refresh_using=self.fetcher.fetch_credentials, method=self.METHOD)


def assume_role_session(role_arn: str, region: Optional[str] = None, endpoint_url: Optional[str] = None) -> boto3.Session:
    """boto3 session whose credentials come from an STS AssumeRole on `role_arn`."""
    source = botocore.session.get_session()
    fetcher = AssumeRoleCredentialFetcher(
        client_creator=partial(source.create_client, region_name=region, endpoint_url=endpoint_url),
        source_credentials=source.get_credentials(),
        role_arn=role_arn,
        extra_args={"RoleSessionName": get_settings().app_name},
    )

    session = botocore.session.get_session()
    session.get_component("credential_provider").insert_before("env", AssumeRoleProvider(fetcher))
    logger.info(f"Using role {role_arn} for storage access")
    return boto3.Session(botocore_session=session, region_name=region)


async def send(client: Any, operation: str, signal: Optional[CancellationToken] = None, **params: Any) -> Any:
    """
    Run one blocking client call in a worker thread.

    The call is raced against `signal`, and every failure, cancellation
    included, comes out as a `StorageBackendError`.
    """
    method = getattr(client, operation)
    try:
        call = asyncio.to_thread(method, **params)
        if signal is None:
            return await call
        return await signal.guard(call)
    except Exception as e:
        raise StorageBackendError.from_error(e) from e


def status_code(response: dict, default: int = 200) -> int:
    return response.get("ResponseMetadata", {}).get("HTTPStatusCode") or default
