############################################################
#
# clawster - Confidential Bot Hosting Orchestrator
#
# models.py: Result types for Phala Cloud API operations
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Result types for provider operations.

Parsers read only the documented fields; anything else the API returns
is ignored.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class ProvisionResult:
    """Phase 1 (declare) result."""

    app_id: str
    enclave_pubkey: str
    compose_hash: str


@dataclass
class CvmInfo:
    """A CVM as reported by the provider."""

    id: str
    app_id: Optional[str] = None
    status: str = "unknown"
    name: Optional[str] = None
    endpoints: List[str] = field(default_factory=list)

    @property
    def endpoint(self) -> Optional[str]:
        """Primary public endpoint, if the provider reports one."""
        return self.endpoints[0] if self.endpoints else None


@dataclass
class SpawnResult:
    """Combined declare + encrypt + commit result."""

    instance: CvmInfo
    enclave_pubkey: str
    app_id: str


def _extract_endpoints(data: Dict[str, Any]) -> List[str]:
    endpoints: List[str] = []
    if data.get("endpoint"):
        endpoints.append(str(data["endpoint"]))
    for entry in data.get("public_urls") or data.get("endpoints") or []:
        if isinstance(entry, str):
            url = entry
        elif isinstance(entry, dict):
            url = entry.get("app") or entry.get("url") or entry.get("instance")
        else:
            url = None
        if url and url not in endpoints:
            endpoints.append(str(url))
    return endpoints


def parse_provision(data: Dict[str, Any]) -> Optional[ProvisionResult]:
    """Parse a declare response, None if required fields are missing."""
    app_id = data.get("app_id")
    pubkey = data.get("app_env_encrypt_pubkey") or data.get("encrypt_pubkey")
    compose_hash = data.get("compose_hash")
    if not (app_id and pubkey and compose_hash):
        return None
    return ProvisionResult(
        app_id=str(app_id),
        enclave_pubkey=str(pubkey),
        compose_hash=str(compose_hash),
    )


def parse_cvm(data: Dict[str, Any]) -> Optional[CvmInfo]:
    """Parse a CVM object, None if it carries no usable ID."""
    cvm_id = data.get("vm_uuid") or data.get("id")
    if not cvm_id:
        return None
    return CvmInfo(
        id=str(cvm_id),
        app_id=str(data["app_id"]) if data.get("app_id") else None,
        status=str(data.get("status") or "unknown").lower(),
        name=data.get("name"),
        endpoints=_extract_endpoints(data),
    )
