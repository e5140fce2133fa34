"""
Request-scoped tenant context.

A TenantContext is resolved once per authenticated request and passed
explicitly to every governed operation. It is immutable and never stored in
module or process state.
"""

import dataclasses
import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Union

from labops.app.core.config import settings
from labops.app.core.exceptions import GovernanceException, invalid_context
from labops.app.core.jwt import decode_access_token
from labops.app.core.observability import new_correlation_id

logger = logging.getLogger(__name__)

Credential = Union[str, Mapping[str, Any]]

USER_ID_CLAIMS = ("sub", "user_id", "userId")
ROLE_CLAIMS = ("role", "roleId", "custom:role")


@dataclass(frozen=True)
class TenantContext:
    """Resolved lab identity for one request."""
    lab_id: str
    user_id: Optional[str] = None
    role_id: Optional[str] = None
    correlation_id: str = dataclasses.field(default_factory=new_correlation_id)

    def with_correlation(self, correlation_id: str) -> "TenantContext":
        return dataclasses.replace(self, correlation_id=correlation_id)


def _first_claim(claims: Mapping[str, Any], names) -> Optional[str]:
    for name in names:
        value = claims.get(name)
        if value not in (None, ""):
            return str(value)
    return None


def resolve(credential: Optional[Credential], correlation_id: Optional[str] = None) -> TenantContext:
    """
    Resolve a tenant context from a credential.
    
    Args:
        credential: Signed JWT string, or an already-verified claims mapping
            (e.g. from an API gateway authorizer)
        correlation_id: Optional upstream correlation ID to carry forward
    
    Returns:
        TenantContext
    
    Raises:
        GovernanceException: INVALID_CONTEXT when the credential cannot be
            decoded or carries no lab identifier
    """
    if credential is None:
        raise GovernanceException(invalid_context("missing credential"))
    
    if isinstance(credential, str):
        claims = decode_access_token(credential)
        if claims is None:
            logger.warning("Credential Rejected", extra={"reason": "undecodable"})
            raise GovernanceException(invalid_context("credential could not be decoded"))
    else:
        claims = credential
    
    lab_id = _first_claim(claims, settings.lab_id_claims)
    if lab_id is None:
        logger.warning("Credential Rejected", extra={"reason": "missing labId"})
        raise GovernanceException(invalid_context("missing labId"))
    
    return TenantContext(
        lab_id=lab_id,
        user_id=_first_claim(claims, USER_ID_CLAIMS),
        role_id=_first_claim(claims, ROLE_CLAIMS),
        correlation_id=correlation_id or new_correlation_id(),
    )
