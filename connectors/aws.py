"""
AWSConnector — the ``cloud`` provider.

boto3 is synchronous, so every SDK call is pushed to a worker thread with
``asyncio.to_thread``.  Sync counts the resources the host app surfaces
(EC2 instances, RDS instances, Lambda functions).
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List, Mapping, Optional

import boto3

from connectors.base import BaseConnector, ConnectorError, CredentialForm, ItemSync
from utils.schemas import CloudCredential, IntegrationMetadata, Provider

logger = logging.getLogger(__name__)


class AWSConnector(BaseConnector):
    """Access-key connector for AWS."""

    provider = Provider.CLOUD
    display_name = "AWS"
    icon = "☁️"
    credential_form = CredentialForm(
        required=("access_key_id", "secret_access_key", "region"),
        optional=("session_token",),
        help_url="https://console.aws.amazon.com/iam/home#/security_credentials",
    )

    def __init__(self, session: boto3.session.Session):
        super().__init__()
        self._session = session

    @classmethod
    def from_credential(cls, credential, settings, *, transport=None):
        cls._check(credential)
        session = boto3.session.Session(
            aws_access_key_id=credential.access_key_id,
            aws_secret_access_key=credential.secret_access_key,
            aws_session_token=credential.session_token,
            region_name=credential.region,
        )
        return cls(session)

    @classmethod
    def credentials_from_fields(cls, fields):
        credential = CloudCredential(
            access_key_id=fields["access_key_id"],
            secret_access_key=fields["secret_access_key"],
            region=fields["region"],
            session_token=fields.get("session_token"),
        )
        return credential, {"region": credential.region}

    @property
    def region(self) -> Optional[str]:
        return self._session.region_name

    async def _call(self, service: str, fn: Callable[[Any], Any]) -> Any:
        """Run ``fn(client)`` for ``service`` off the event loop."""

        def _run():
            return fn(self._session.client(service))

        try:
            return await asyncio.to_thread(_run)
        except Exception as exc:
            raise ConnectorError(self.display_name, f"{service}: {exc}") from exc

    # ── API ─────────────────────────────────────────────────────────────

    async def get_caller_identity(self) -> Dict[str, Any]:
        return await self._call("sts", lambda c: c.get_caller_identity())

    async def list_ec2_instances(self) -> List[Dict[str, Any]]:
        data = await self._call("ec2", lambda c: c.describe_instances())
        return [i for r in data.get("Reservations", []) for i in r.get("Instances", [])]

    async def list_rds_instances(self) -> List[Dict[str, Any]]:
        data = await self._call("rds", lambda c: c.describe_db_instances())
        return data.get("DBInstances", [])

    async def list_lambda_functions(self) -> List[Dict[str, Any]]:
        data = await self._call("lambda", lambda c: c.list_functions())
        return data.get("Functions", [])

    async def identity(self) -> IntegrationMetadata:
        caller = await self.get_caller_identity()
        return IntegrationMetadata(
            account_name=caller.get("Account"),
            workspace_name=self.region,
        )

    async def sync_items(self, settings: Mapping[str, Any]) -> ItemSync:
        """
        Count resources per service.  A service the key cannot read is an
        item error; every service failing means the account is unreachable.
        """
        listings = {
            "EC2": self.list_ec2_instances,
            "RDS": self.list_rds_instances,
            "Lambda": self.list_lambda_functions,
        }
        outcomes = await asyncio.gather(*(fn() for fn in listings.values()), return_exceptions=True)

        result = ItemSync()
        for name, outcome in zip(listings, outcomes):
            if isinstance(outcome, ConnectorError):
                result.errors.append(f"Failed to list {name} resources: {outcome.message}")
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                result.items_synced += len(outcome)

        if len(result.errors) == len(listings):
            raise ConnectorError(self.display_name, "; ".join(result.errors))
        return result
