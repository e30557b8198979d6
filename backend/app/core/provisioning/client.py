############################################################
#
# clawster - Confidential Bot Hosting Orchestrator
#
# client.py: Phala Cloud API client for CVM provisioning
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Client for the Phala Cloud CVM API.

Provisioning is two-phase:

- POST /cvms/provision (declare): compose with placeholder secrets plus
  the allowed env key names. Returns the app ID, the enclave's X25519
  public key, and the compose hash. No billable compute exists yet.
- POST /cvms (commit): app ID, compose hash, and the encrypted env
  envelope. Creates and starts the CVM.
"""

from typing import Any, Dict, List, Optional, Sequence, Tuple

import httpx

from backend.app.core.enclave.encryption import encrypt_env_vars
from backend.app.core.errors import (
    ClawsterError,
    ExternalNotFound,
    ExternalUnavailable,
    ProvisioningError,
)
from backend.app.core.provisioning.compose import make_compose
from backend.app.core.provisioning.models import (
    CvmInfo,
    ProvisionResult,
    SpawnResult,
    parse_cvm,
    parse_provision,
)
from backend.app.core.provisioning.retry import RetryPolicy
from backend.app.core.provisioning.sizes import get_size
from backend.app.logging_config import get_logger
from backend.app.settings import Settings

logger = get_logger(__name__)


class PhalaClient:
    """
    HTTP client for the Phala Cloud API.

    One instance is constructed per process and passed to the services
    that need it. All calls use a fixed timeout; transient failures on
    idempotent calls are retried by the RetryPolicy.
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str],
        timeout: float = 15.0,
        retry_policy: Optional[RetryPolicy] = None,
        bot_image: str = "ghcr.io/mcclowin/openclaw-tee:latest",
        name_prefix: str = "clawster-",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.retry_policy = retry_policy or RetryPolicy()
        self.bot_image = bot_image
        self.name_prefix = name_prefix
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "PhalaClient":
        """Build a client from application settings."""
        return cls(
            base_url=settings.phala_api_url,
            api_key=settings.phala_api_key,
            timeout=settings.provider_request_timeout,
            retry_policy=RetryPolicy(
                max_attempts=settings.provider_retry_max_attempts,
                backoff=settings.provider_retry_backoff,
            ),
            bot_image=settings.bot_image,
            name_prefix=settings.bot_name_prefix,
            transport=transport,
        )

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            if not self.api_key:
                raise ProvisioningError("PHALA_API_KEY not configured")
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers={
                    "X-API-Key": self.api_key,
                    "Content-Type": "application/json",
                },
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def _send(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        """Send one request and classify failures into domain errors."""
        client = await self._get_client()
        try:
            response = await client.request(method, path, json=json, params=params, headers=headers)
        except httpx.TimeoutException as e:
            raise ExternalUnavailable(f"Phala {method} {path} timed out", detail=str(e)) from e
        except httpx.TransportError as e:
            raise ExternalUnavailable(f"Phala {method} {path} unreachable", detail=str(e)) from e

        if response.status_code == 404:
            raise ExternalNotFound(f"Phala {method} {path}: not found")
        if response.status_code >= 500:
            raise ExternalUnavailable(
                f"Phala {method} {path} failed: {response.status_code}",
                status_code=response.status_code,
                detail=response.text[:500],
            )
        if response.status_code >= 400:
            raise ProvisioningError(
                f"Phala {method} {path} failed: {response.status_code}",
                status_code=response.status_code,
                detail=response.text[:500],
            )
        return response

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        idempotent: bool = True,
        **kwargs: Any,
    ) -> httpx.Response:
        return await self.retry_policy.run(
            operation,
            lambda: self._send(method, path, **kwargs),
            idempotent=idempotent,
        )

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise ProvisioningError("Phala returned invalid JSON", detail=response.text[:200]) from e

    # ── Provisioning ──

    async def provision(
        self,
        bot_name: str,
        size: str,
        env_keys: Sequence[str],
    ) -> ProvisionResult:
        """
        Phase 1: declare the CVM.

        Args:
            bot_name: Bot name (prefixed for the provider-side name)
            size: Size tier name
            env_keys: Names of the env vars that will arrive encrypted

        Returns:
            ProvisionResult with app ID, enclave pubkey, compose hash
        """
        tier = get_size(size)
        name = f"{self.name_prefix}{bot_name}"
        body = {
            "name": name,
            "instance_type": tier.instance_type,
            "vcpu": tier.vcpu,
            "memory": tier.memory_mb,
            "disk_size": tier.disk_gb,
            "compose_file": {
                "name": name,
                "docker_compose_file": make_compose(bot_name, self.bot_image, env_keys),
                "allowed_envs": list(env_keys),
                "kms_enabled": True,
                "public_logs": False,
                "public_sysinfo": False,
            },
        }

        response = await self._request("declare", "POST", "/cvms/provision", json=body)
        result = parse_provision(self._json(response))
        if result is None:
            raise ProvisioningError("Phala provision response missing app_id, pubkey, or compose_hash")

        logger.info("cvm_declared", bot_name=bot_name, app_id=result.app_id, size=tier.name)
        return result

    async def commit(
        self,
        app_id: str,
        compose_hash: str,
        encrypted_env: str,
        env_keys: Sequence[str],
        idempotency_key: Optional[str] = None,
    ) -> CvmInfo:
        """
        Phase 2: create the CVM with the encrypted env.

        Retried on transient errors only when an idempotency key is
        supplied; otherwise a retry could create a second billable CVM.
        """
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else None
        body = {
            "app_id": app_id,
            "compose_hash": compose_hash,
            "encrypted_env": encrypted_env,
            "env_keys": list(env_keys),
        }

        response = await self._request(
            "commit",
            "POST",
            "/cvms",
            idempotent=idempotency_key is not None,
            json=body,
            headers=headers,
        )
        cvm = parse_cvm(self._json(response))
        if cvm is None:
            raise ProvisioningError("Phala commit response missing CVM id")
        if not cvm.app_id:
            cvm.app_id = app_id

        logger.info("cvm_committed", app_id=app_id, cvm_id=cvm.id, status=cvm.status)
        return cvm

    async def spawn(
        self,
        bot_name: str,
        size: str,
        env_vars: Sequence[Tuple[str, str]],
        idempotency_key: Optional[str] = None,
    ) -> SpawnResult:
        """
        Declare, encrypt, and commit a bot CVM.

        On failure the raised error carries ``app_id`` (declare succeeded)
        and ``commit_attempted`` so the caller can clean up remotely.
        """
        env_keys = [key for key, _ in env_vars]
        app_id: Optional[str] = None
        commit_attempted = False

        try:
            declared = await self.provision(bot_name, size, env_keys)
            app_id = declared.app_id

            encrypted_env = encrypt_env_vars(env_vars, declared.enclave_pubkey)

            commit_attempted = True
            cvm = await self.commit(
                declared.app_id,
                declared.compose_hash,
                encrypted_env,
                env_keys,
                idempotency_key=idempotency_key,
            )
        except ClawsterError as e:
            e.app_id = app_id
            e.commit_attempted = commit_attempted
            raise

        return SpawnResult(instance=cvm, enclave_pubkey=declared.enclave_pubkey, app_id=declared.app_id)

    # ── Lifecycle ──

    async def get_status(self, cvm_id: str) -> CvmInfo:
        """Get CVM status. Raises ExternalNotFound when the CVM is gone."""
        response = await self._request("get_status", "GET", f"/cvms/{cvm_id}")
        cvm = parse_cvm(self._json(response))
        if cvm is None:
            raise ProvisioningError(f"Phala status response for {cvm_id} missing id")
        return cvm

    async def list_instances(self) -> List[CvmInfo]:
        """List all CVMs on our account."""
        response = await self._request("list_instances", "GET", "/cvms")
        data = self._json(response)
        items = data.get("data", data.get("items", [])) if isinstance(data, dict) else data
        cvms = []
        for item in items or []:
            if isinstance(item, dict):
                cvm = parse_cvm(item)
                if cvm is not None:
                    cvms.append(cvm)
        return cvms

    async def restart(self, cvm_id: str) -> None:
        """Restart a CVM."""
        await self._request("restart", "POST", f"/cvms/{cvm_id}/restart")
        logger.info("cvm_restarted", cvm_id=cvm_id)

    async def delete(self, cvm_id: str) -> bool:
        """
        Delete a CVM (or app) by ID.

        Returns:
            True if deleted, False if it was already gone
        """
        try:
            await self._request("delete", "DELETE", f"/cvms/{cvm_id}")
        except ExternalNotFound:
            logger.info("cvm_already_gone", cvm_id=cvm_id)
            return False
        logger.info("cvm_deleted", cvm_id=cvm_id)
        return True

    # ── Observability ──

    async def get_attestation(self, cvm_id: str) -> Optional[Dict[str, Any]]:
        """Fetch the CVM's attestation report, None if unavailable."""
        try:
            response = await self._send("GET", f"/cvms/{cvm_id}/attestation")
        except ClawsterError as e:
            logger.debug("attestation_unavailable", cvm_id=cvm_id, error=str(e))
            return None
        data = self._json(response)
        return data if isinstance(data, dict) else None

    async def get_logs(self, cvm_id: str, tail: int = 100) -> str:
        """Fetch recent container log lines for a CVM."""
        response = await self._request(
            "get_logs", "GET", f"/cvms/{cvm_id}/logs", params={"tail": tail}
        )
        content_type = response.headers.get("content-type", "")
        if "application/json" in content_type:
            data = self._json(response)
            if isinstance(data, dict):
                logs = data.get("logs", "")
                return "\n".join(logs) if isinstance(logs, list) else str(logs)
            if isinstance(data, list):
                return "\n".join(str(line) for line in data)
        return response.text
