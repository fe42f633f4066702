"""Identity assertion verification for incoming requests."""

from __future__ import annotations

import base64
import binascii
import json
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from joserfc import jws
from joserfc.errors import BadSignatureError
from joserfc.jwk import OKPKey

from task_escrow_service.core.exceptions import ServiceError
from task_escrow_service.logging import get_logger

if TYPE_CHECKING:
    from task_escrow_service.services.ledger_store import LedgerStore

VALID_ROLES = frozenset({"student", "employer", "admin"})


@dataclass(frozen=True)
class Actor:
    """A verified (subject, role) pair. The role is the stored one, not the claimed one."""

    user_id: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def _unauthorized(message: str) -> ServiceError:
    return ServiceError("UNAUTHORIZED", message, 401, {})


def load_issuer_key(public_key: str) -> OKPKey:
    """Build an OKP JWK from an ``ed25519:<base64>`` public key string."""
    key_b64 = public_key.split(":", 1)[1]
    try:
        raw_public = base64.b64decode(key_b64, validate=True)
    except (binascii.Error, ValueError) as exc:
        msg = "Issuer public key is not valid base64"
        raise ValueError(msg) from exc
    if len(raw_public) != 32:
        msg = "Issuer public key must be a 32-byte Ed25519 key"
        raise ValueError(msg)

    jwk_dict: dict[str, str | list[str]] = {
        "kty": "OKP",
        "crv": "Ed25519",
        "x": base64.urlsafe_b64encode(raw_public).rstrip(b"=").decode(),
    }
    return OKPKey.import_key(jwk_dict)


class IdentityVerifier:
    """
    Verifies EdDSA-signed identity assertions issued by the identity provider.

    The assertion payload carries ``sub`` and ``role``. The first time a
    subject is seen a user row is created with the asserted role; from then
    on the stored role is authoritative, so a stale claim cannot escalate.
    """

    def __init__(self, store: LedgerStore, issuer_public_key: str) -> None:
        self._store = store
        self._key = load_issuer_key(issuer_public_key)

    def verify(self, token: str) -> Actor:
        """
        Verify a compact JWS assertion and resolve the acting user.

        Raises:
            ServiceError: UNAUTHORIZED (401) for malformed, unsigned, expired
                          or incomplete assertions
        """
        logger = get_logger(__name__)

        if not token or token.count(".") != 2:
            raise _unauthorized("Identity assertion must be a compact JWS")

        try:
            obj = jws.deserialize_compact(token, self._key, algorithms=["EdDSA"])
        except BadSignatureError as exc:
            logger.info("Rejected identity assertion with bad signature")
            raise _unauthorized("Identity assertion signature is invalid") from exc
        except Exception as exc:
            raise _unauthorized("Identity assertion could not be verified") from exc

        try:
            payload: Any = json.loads(obj.payload)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise _unauthorized("Identity assertion payload is not valid JSON") from exc

        if not isinstance(payload, dict):
            raise _unauthorized("Identity assertion payload must be a JSON object")

        subject = payload.get("sub")
        role = payload.get("role")
        if not isinstance(subject, str) or len(subject) < 1:
            raise _unauthorized("Identity assertion is missing 'sub'")
        if role not in VALID_ROLES:
            raise _unauthorized("Identity assertion carries an unknown role")

        expires = payload.get("exp")
        if isinstance(expires, int | float) and expires < time.time():
            raise _unauthorized("Identity assertion has expired")

        user = self._store.ensure_user(subject, str(role))
        if user["role"] != role:
            logger.info(
                "Asserted role differs from stored role",
                extra={"user_id": subject, "claimed_role": role, "stored_role": user["role"]},
            )
        return Actor(user_id=subject, role=str(user["role"]))
