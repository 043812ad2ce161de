"""
Capability-based access control.

Every privileged entry point checks `(caller, capability) -> bool` against
an explicit grant table instead of relying on a single owner.
"""

from enum import Enum
from typing import Dict, Iterable, Optional, Set
import logging

from .errors import AuthorizationError, ValidationError

logger = logging.getLogger(__name__)


class Capability(Enum):
    """Capabilities gating authoritative entry points"""
    ORACLE_ADMIN = "oracle_admin"    # register / reconfigure feeds
    MANUAL_ORACLE = "manual_oracle"  # submit manual prices
    ADMIN = "admin"                  # attestor registry and quorum
    ATTESTOR = "attestor"            # submit / attest audit reports


class AccessControl:
    """
    Grant table mapping caller identities to capability sets.

    Usage:
        access = AccessControl({"ops": {Capability.ORACLE_ADMIN}})
        access.require("ops", Capability.ORACLE_ADMIN)
    """

    def __init__(self, grants: Optional[Dict[str, Iterable[Capability]]] = None):
        self._grants: Dict[str, Set[Capability]] = {}
        for caller, capabilities in (grants or {}).items():
            for capability in capabilities:
                self.grant(caller, capability)

    def has(self, caller: str, capability: Capability) -> bool:
        return capability in self._grants.get(caller, ())

    def require(self, caller: str, capability: Capability):
        """Raise AuthorizationError unless caller holds capability"""
        if not self.has(caller, capability):
            raise AuthorizationError(caller, capability)

    def grant(self, caller: str, capability: Capability):
        if not caller:
            raise ValidationError("caller identity is required")
        self._grants.setdefault(caller, set()).add(capability)
        logger.debug(f"Granted {capability.value} to {caller}")

    def revoke(self, caller: str, capability: Capability):
        capabilities = self._grants.get(caller)
        if not capabilities:
            return
        capabilities.discard(capability)
        if not capabilities:
            del self._grants[caller]
        logger.debug(f"Revoked {capability.value} from {caller}")

    def holders(self, capability: Capability) -> Set[str]:
        return {c for c, caps in self._grants.items() if capability in caps}
