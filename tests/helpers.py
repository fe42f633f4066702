"""Shared test helpers for identity assertions and marketplace setup."""

from __future__ import annotations

import base64
import json
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import yaml
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat
from joserfc import jws
from joserfc.jwk import OKPKey

from task_escrow_service.config import RulesConfig
from task_escrow_service.schemas import SubmissionReport, TaskDraft
from task_escrow_service.services.identity import Actor

if TYPE_CHECKING:
    from task_escrow_service.services.anomaly_sweep import AnomalySweep
    from task_escrow_service.services.consistency_auditor import ConsistencyAuditor
    from task_escrow_service.services.dispute_arbitrator import DisputeArbitrator
    from task_escrow_service.services.ledger_store import LedgerStore
    from task_escrow_service.services.maintenance import MaintenanceService
    from task_escrow_service.services.settlement import SettlementEngine
    from task_escrow_service.services.task_lifecycle import TaskLifecycle

EMPLOYER = Actor(user_id="u-employer", role="employer")
OTHER_EMPLOYER = Actor(user_id="u-employer-2", role="employer")
STUDENT = Actor(user_id="u-student", role="student")
OTHER_STUDENT = Actor(user_id="u-student-2", role="student")
ADMIN = Actor(user_id="u-admin", role="admin")

REJECTION_REASON = "The proof link does not show the finished work"

RULES_YAML = """\
rules:
  cancellation_fee_ratio: 0.5
  dispute_fee_ratio: 0.5
  min_reason_length: 10
  restriction_days: 7
  inactivity_days: 7
  overwork_threshold: 5
  overwork_high: 7
  overwork_critical: 10
  deadline_high_days: 3
  deadline_critical_days: 7
  delayed_payment_days: 3
  delayed_payment_critical_days: 7
  stale_submission_days: 30
  stale_in_progress_days: 60
"""


def config_yaml(
    db_path: str,
    issuer_public_key: str,
    *,
    webhook_url: str | None = None,
    max_body_size: int = 1048576,
    log_directory: str = "data/logs",
) -> str:
    """A complete config.yaml for the given database and issuer key."""
    webhook = "null" if webhook_url is None else f'"{webhook_url}"'
    return f"""\
service:
  name: "task-escrow"
  version: "0.1.0"
server:
  host: "0.0.0.0"
  port: 8010
  log_level: "info"
logging:
  level: "WARNING"
  directory: "{log_directory}"
database:
  path: "{db_path}"
identity:
  issuer_public_key: "{issuer_public_key}"
notifications:
  webhook_url: {webhook}
  timeout_seconds: 5
request:
  max_body_size: {max_body_size}
{RULES_YAML}"""


def make_rules(**overrides: Any) -> RulesConfig:
    """Business rules as shipped in config.yaml, with optional overrides."""
    values: dict[str, Any] = yaml.safe_load(RULES_YAML)["rules"]
    values.update(overrides)
    return RulesConfig(**values)


def generate_keypair() -> tuple[Ed25519PrivateKey, str]:
    """Generate Ed25519 keypair -> (private_key, 'ed25519:<base64_pub>')."""
    private_key = Ed25519PrivateKey.generate()
    pub_bytes = private_key.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)
    public_key = f"ed25519:{base64.b64encode(pub_bytes).decode()}"
    return private_key, public_key


def make_assertion(
    private_key: Ed25519PrivateKey,
    subject: str,
    role: str,
    **claims: Any,
) -> str:
    """Create a real identity assertion (compact JWS) signed by the given key."""
    raw_private = private_key.private_bytes_raw()
    raw_public = private_key.public_key().public_bytes_raw()
    jwk_dict = {
        "kty": "OKP",
        "crv": "Ed25519",
        "d": base64.urlsafe_b64encode(raw_private).rstrip(b"=").decode(),
        "x": base64.urlsafe_b64encode(raw_public).rstrip(b"=").decode(),
    }
    key = OKPKey.import_key(jwk_dict)
    protected = {"alg": "EdDSA", "kid": "issuer"}
    payload = {"sub": subject, "role": role, **claims}
    payload_bytes = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode()
    return jws.serialize_compact(protected, payload_bytes, key, algorithms=["EdDSA"])


def tamper_assertion(token: str) -> str:
    """Alter the payload of an assertion after signing (creates invalid signature)."""
    parts = token.split(".")
    payload = json.loads(base64.urlsafe_b64decode(parts[1] + "=="))
    payload["role"] = "admin"
    new_payload = base64.urlsafe_b64encode(json.dumps(payload).encode()).rstrip(b"=").decode()
    return f"{parts[0]}.{new_payload}.{parts[2]}"


@dataclass
class Marketplace:
    """The ledger services wired onto one store, as the lifespan wires them."""

    store: LedgerStore
    lifecycle: TaskLifecycle
    settlement: SettlementEngine
    disputes: DisputeArbitrator
    sweep: AnomalySweep
    auditor: ConsistencyAuditor
    maintenance: MaintenanceService

    def register(self, *actors: Actor) -> None:
        for actor in actors:
            self.store.ensure_user(actor.user_id, actor.role)

    def post(self, gold: int = 500, employer: Actor = EMPLOYER, **fields: Any) -> dict[str, Any]:
        draft = TaskDraft(title=fields.pop("title", "Design a flyer"), gold=gold, **fields)
        return self.lifecycle.post_task(employer, draft)

    def start(
        self,
        gold: int = 500,
        student: Actor = STUDENT,
        employer: Actor = EMPLOYER,
        **fields: Any,
    ) -> dict[str, Any]:
        """Post a task and accept the given student on it."""
        task = self.post(gold, employer, **fields)
        application = self.lifecycle.apply(student, task["task_id"], "I can do this")
        return self.lifecycle.accept_application(employer, application["application_id"])

    def submit(self, task_id: str, student: Actor = STUDENT) -> dict[str, Any]:
        report = SubmissionReport(proof_url="https://blob.example/proof.png", notes="done")
        return self.lifecycle.submit_work(student, task_id, report)

    def reject(self, task_id: str, employer: Actor = EMPLOYER) -> dict[str, Any]:
        return self.lifecycle.reject_submission(employer, task_id, REJECTION_REASON)

    def confirmed(self, gold: int = 500, student: Actor = STUDENT) -> dict[str, Any]:
        """Run a task all the way to a confirmed, paid submission."""
        task = self.start(gold, student)
        self.submit(task["task_id"], student)
        return self.settlement.confirm_submission(EMPLOYER, task["task_id"])["task"]

    def rejected(self, gold: int = 400, student: Actor = STUDENT) -> dict[str, Any]:
        """Run a task to a rejected submission."""
        task = self.start(gold, student)
        self.submit(task["task_id"], student)
        return self.reject(task["task_id"])

    def balance(self, user_id: str) -> int:
        user = self.store.get_user(user_id)
        assert user is not None
        return int(user["gold"])
