from __future__ import annotations

import asyncio
import functools
import logging
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, TypeVar

from audit_log import build_audit_event, write_audit_event
from contracts.collaborators import Ledger, Session, Storage
from contracts.errors import (
    AuthenticationFailed,
    CapsuleError,
    CollaboratorError,
    ErrorKind,
    PipelineStep,
    PolicyDenied,
    ValidationError,
)
from contracts.schemas import (
    Capsule,
    CapsuleMetadata,
    CreateCapsuleRequest,
    CreateResult,
    EligibilityResult,
    EncryptionEnvelope,
    FailureReason,
    LifecycleState,
    Location,
    UnlockResult,
    WrappedKey,
    as_utc,
    utc_now,
)
from eligibility_policy import DEFAULT_POLICY, EligibilityPolicy
from envelope_crypto import EncryptionEngine, KeyScope
from orchestrator.config import OrchestratorConfig
from orchestrator.locks import KeyedLockTable
from orchestrator.registry import CapsuleRegistry

logger = logging.getLogger(__name__)

T = TypeVar("T")

CREATE = "create"
UNLOCK = "unlock"
DEFAULT_ATTEMPT_HISTORY = 256


@dataclass
class PipelineAttempt:
    pipeline: str
    key: str
    owner: str
    state: LifecycleState = LifecycleState.DRAFT
    steps: list[str] = field(default_factory=list)
    failure: Optional[FailureReason] = None
    capsule_id: Optional[str] = None
    # Set right before the first irreversible external effect.
    committed: bool = False

    def enter(self, step: PipelineStep, state: Optional[LifecycleState] = None) -> None:
        self.steps.append(step.value)
        if state is not None:
            self.state = state
        logger.debug(f"[{self.pipeline}:{self.key}] {step.value} ({self.state.value})")

    def fail(self, error: CapsuleError) -> FailureReason:
        step = error.step.value if error.step else (self.steps[-1] if self.steps else PipelineStep.VALIDATE.value)
        self.failure = FailureReason(kind=error.kind.value, step=step, detail=error.message)
        self.state = LifecycleState.FAILED
        return self.failure


def validate_create_request(request: CreateCapsuleRequest, now: datetime) -> None:
    if not isinstance(request.plaintext, (bytes, bytearray)) or len(request.plaintext) == 0:
        raise ValidationError("content must not be empty", step=PipelineStep.VALIDATE)
    if request.unlock_timestamp is None or as_utc(request.unlock_timestamp) <= as_utc(now):
        raise ValidationError("unlock time must be in the future", step=PipelineStep.VALIDATE)
    if request.geofence is not None and not request.geofence.radius_meters > 0:
        raise ValidationError("geofence radius must be positive", step=PipelineStep.VALIDATE)


class CapsuleLifecycleOrchestrator:
    """
    Runs the create and unlock pipelines:
      - steps are strictly ordered; no step starts before the previous result is known
      - any failure leaves the attempt in Failed(kind, step); nothing is retried
      - one pipeline per capsule id (or draft id) at a time
      - content and wrapping keys are wiped on every exit path
    """

    def __init__(
        self,
        ledger: Ledger,
        storage: Storage,
        *,
        engine: Optional[EncryptionEngine] = None,
        registry: Optional[CapsuleRegistry] = None,
        policy: EligibilityPolicy = DEFAULT_POLICY,
        config: Optional[OrchestratorConfig] = None,
        clock: Callable[[], datetime] = utc_now,
        attempt_history: int = DEFAULT_ATTEMPT_HISTORY,
    ) -> None:
        if attempt_history < 1:
            raise ValueError("attempt_history must be positive")
        self._ledger = ledger
        self._storage = storage
        self._engine = engine or EncryptionEngine()
        self._policy = policy
        self._config = config or OrchestratorConfig()
        self._clock = clock
        self._locks = KeyedLockTable()
        self.registry = registry or CapsuleRegistry()
        # Most recent attempt per key that got past the guard, oldest first.
        self.attempts: "OrderedDict[str, PipelineAttempt]" = OrderedDict()
        self._attempt_history = attempt_history

    @property
    def config(self) -> OrchestratorConfig:
        return self._config

    # -- public operations -------------------------------------------------

    async def create_capsule(
        self,
        session: Session,
        request: CreateCapsuleRequest,
        *,
        draft_id: Optional[str] = None,
    ) -> CreateResult:
        # Rejected before any side effect or lock.
        validate_create_request(request, self._clock())

        attempt = PipelineAttempt(CREATE, f"draft:{draft_id or uuid.uuid4().hex}", session.owner)
        return await self._run(attempt, functools.partial(self._create, session, request, attempt))

    async def unlock_capsule(
        self,
        session: Session,
        capsule_id: str,
        current_location: Optional[Location] = None,
    ) -> UnlockResult:
        capsule_id = str(capsule_id)
        if not capsule_id:
            raise ValidationError("capsule id must not be empty", step=PipelineStep.VALIDATE)

        attempt = PipelineAttempt(UNLOCK, capsule_id, session.owner, state=LifecycleState.SEALED, capsule_id=capsule_id)
        return await self._run(attempt, functools.partial(self._unlock, session, capsule_id, current_location, attempt))

    def check_eligibility(
        self,
        capsule_id: str,
        now: Optional[datetime] = None,
        current_location: Optional[Location] = None,
    ) -> EligibilityResult:
        """Advisory evaluation against the registry copy; the ledger decides."""
        capsule = self.registry.get(capsule_id)
        if capsule is None:
            raise CollaboratorError(f"unknown capsule {capsule_id}", kind=ErrorKind.NOT_FOUND, step=PipelineStep.LOOKUP)
        return self._policy.evaluate(capsule, now=now or self._clock(), location=current_location)

    async def refresh(self, session: Session) -> int:
        capsules = await self._collaborator_call(
            PipelineStep.LOOKUP,
            self._ledger.list_capsules(session.owner),
            timeout=self._config.ledger_timeout_s,
            kind=ErrorKind.LEDGER_REJECTED,
        )
        return await self.registry.replace_owner(session.owner, capsules)

    # -- pipeline runner ---------------------------------------------------

    async def _run(self, attempt: PipelineAttempt, body: Callable[[], Awaitable[T]]) -> T:
        task = asyncio.ensure_future(self._guarded(attempt, body))
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if not attempt.committed:
                task.cancel()
            else:
                logger.warning(
                    f"[{attempt.pipeline}:{attempt.key}] Caller cancelled after commit; running to a terminal state"
                )
                task.add_done_callback(_consume_result)
            raise

    async def _guarded(self, attempt: PipelineAttempt, body: Callable[[], Awaitable[T]]) -> T:
        async with self._locks.hold(attempt.key):
            self._record(attempt)
            try:
                result = await body()
            except CapsuleError as e:
                failure = attempt.fail(e)
                logger.warning(f"[{attempt.pipeline}:{attempt.key}] Failed at {failure.step}: {failure.kind}")
                if attempt.capsule_id is not None:
                    await self.registry.set_state(attempt.capsule_id, LifecycleState.FAILED, failure)
                await self._audit(attempt)
                raise
            except asyncio.CancelledError:
                logger.info(f"[{attempt.pipeline}:{attempt.key}] Cancelled in {attempt.state.value}")
                raise
        await self._audit(attempt)
        return result

    # -- create ------------------------------------------------------------

    async def _create(self, session: Session, request: CreateCapsuleRequest, attempt: PipelineAttempt) -> CreateResult:
        with KeyScope() as keys:
            attempt.enter(PipelineStep.GENERATE_KEY, LifecycleState.ENCRYPTING)
            content_key = keys.track(self._local(PipelineStep.GENERATE_KEY, self._engine.generate_content_key))

            attempt.enter(PipelineStep.ENCRYPT)
            envelope = self._local(PipelineStep.ENCRYPT, self._engine.encrypt, bytes(request.plaintext), content_key)

            attempt.committed = True
            attempt.enter(PipelineStep.UPLOAD, LifecycleState.UPLOADING)
            pointer = await self._collaborator_call(
                PipelineStep.UPLOAD,
                self._storage.put(envelope.to_bytes()),
                timeout=self._config.storage_timeout_s,
                kind=ErrorKind.STORAGE_UNAVAILABLE,
            )
            if not pointer:
                raise CollaboratorError("storage returned no address", kind=ErrorKind.STORAGE_UNAVAILABLE, step=PipelineStep.UPLOAD)

            attempt.state = LifecycleState.KEY_WRAPPING
            signature = await self._sign(session, attempt)

            attempt.enter(PipelineStep.DERIVE_KEY)
            wrapping_key = keys.track(self._local(PipelineStep.DERIVE_KEY, self._engine.derive_wrapping_key, signature))

            attempt.enter(PipelineStep.WRAP_KEY)
            wrapped = self._local(PipelineStep.WRAP_KEY, self._engine.wrap_key, content_key, wrapping_key)

        metadata = CapsuleMetadata(
            owner=session.owner,
            title=request.title,
            description=request.description,
            classification=request.classification,
            content_pointer=str(pointer),
            wrapped_content_key=wrapped.to_text(),
            unlock_timestamp=as_utc(request.unlock_timestamp),
            geofence=request.geofence,
            content_name=request.content_name,
            content_type=request.content_type,
            content_size=len(request.plaintext),
            created_at=as_utc(self._clock()),
        )

        attempt.enter(PipelineStep.REGISTER, LifecycleState.REGISTERING)
        registration = await self._collaborator_call(
            PipelineStep.REGISTER,
            self._ledger.register(metadata),
            timeout=self._config.ledger_timeout_s,
            kind=ErrorKind.LEDGER_REJECTED,
        )

        capsule = Capsule.from_metadata(registration.capsule_id, metadata, LifecycleState.SEALED)
        attempt.capsule_id = capsule.id
        attempt.state = LifecycleState.SEALED
        await self.registry.upsert(capsule, unconfirmed=True)
        logger.info(f"[{attempt.pipeline}:{attempt.key}] Sealed capsule {capsule.id} at {capsule.content_pointer}")

        await self._refresh_after(session)
        return CreateResult(
            capsule_id=capsule.id,
            content_pointer=capsule.content_pointer,
            transaction_receipt=registration.receipt,
            capsule=self.registry.get(capsule.id) or capsule,
        )

    # -- unlock ------------------------------------------------------------

    async def _unlock(
        self,
        session: Session,
        capsule_id: str,
        location: Optional[Location],
        attempt: PipelineAttempt,
    ) -> UnlockResult:
        attempt.enter(PipelineStep.LOOKUP)
        capsule = self.registry.get(capsule_id)
        if capsule is None:
            await self.refresh(session)
            capsule = self.registry.get(capsule_id)
        if capsule is None:
            raise CollaboratorError(f"unknown capsule {capsule_id}", kind=ErrorKind.NOT_FOUND, step=PipelineStep.LOOKUP)

        if location is None and capsule.has_geo_lock and session.location_provider is not None:
            attempt.enter(PipelineStep.LOCATE)
            location = await self._collaborator_call(
                PipelineStep.LOCATE,
                session.location_provider.current_location(),
                timeout=self._config.location_timeout_s,
                kind=ErrorKind.LOCATION_UNAVAILABLE,
                timeout_kind=ErrorKind.TIMEOUT,
            )

        attempt.enter(PipelineStep.QUERY_ELIGIBILITY, LifecycleState.UNLOCKING)
        authorized = await self._collaborator_call(
            PipelineStep.QUERY_ELIGIBILITY,
            self._ledger.query_eligibility(capsule_id, location),
            timeout=self._config.ledger_timeout_s,
            kind=ErrorKind.LEDGER_REJECTED,
        )
        if not authorized:
            advisory = self._policy.evaluate(capsule, now=self._clock(), location=location)
            raise PolicyDenied(
                f"ledger denied unlock (advisory: {advisory.reason.value})",
                step=PipelineStep.QUERY_ELIGIBILITY,
            )

        attempt.committed = True
        await self.registry.set_state(capsule_id, LifecycleState.UNLOCKING)

        with KeyScope() as keys:
            signature = await self._sign(session, attempt)

            attempt.enter(PipelineStep.DERIVE_KEY)
            wrapping_key = keys.track(self._local(PipelineStep.DERIVE_KEY, self._engine.derive_wrapping_key, signature))

            attempt.enter(PipelineStep.UNWRAP_KEY)
            wrapped = self._local(PipelineStep.UNWRAP_KEY, _parse_wrapped_key, capsule.wrapped_content_key)
            content_key = keys.track(self._local(PipelineStep.UNWRAP_KEY, self._engine.unwrap_key, wrapped, wrapping_key))

            attempt.enter(PipelineStep.DOWNLOAD)
            blob = await self._collaborator_call(
                PipelineStep.DOWNLOAD,
                self._storage.get(capsule.content_pointer),
                timeout=self._config.storage_timeout_s,
                kind=ErrorKind.STORAGE_UNAVAILABLE,
            )

            attempt.enter(PipelineStep.DECRYPT)
            envelope = self._local(PipelineStep.DECRYPT, _parse_envelope, blob)
            plaintext = self._local(PipelineStep.DECRYPT, self._engine.decrypt, envelope, content_key)

        attempt.state = LifecycleState.UNLOCKED
        unlocked = await self.registry.set_state(capsule_id, LifecycleState.UNLOCKED) or capsule.with_state(
            LifecycleState.UNLOCKED
        )
        logger.info(f"[{attempt.pipeline}:{attempt.key}] Unlocked capsule {capsule_id}")

        await self._refresh_after(session)
        return UnlockResult(capsule_id=capsule_id, plaintext=plaintext, capsule=self.registry.get(capsule_id) or unlocked)

    # -- step helpers ------------------------------------------------------

    async def _sign(self, session: Session, attempt: PipelineAttempt) -> bytes:
        attempt.enter(PipelineStep.SIGN)
        signature = await self._collaborator_call(
            PipelineStep.SIGN,
            session.signer.sign(self._config.challenge),
            timeout=self._config.signer_timeout_s,
            kind=ErrorKind.SIGNER_UNAVAILABLE,
        )
        if not signature:
            raise CollaboratorError("signer returned an empty signature", kind=ErrorKind.SIGNER_UNAVAILABLE, step=PipelineStep.SIGN)
        return bytes(signature)

    @staticmethod
    def _local(step: PipelineStep, fn: Callable[..., T], *args: Any) -> T:
        try:
            return fn(*args)
        except CapsuleError as e:
            if e.step is None:
                e.step = step
            raise

    @staticmethod
    async def _collaborator_call(
        step: PipelineStep,
        awaitable: Awaitable[T],
        *,
        timeout: float,
        kind: ErrorKind,
        timeout_kind: Optional[ErrorKind] = None,
    ) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout)
        except CapsuleError as e:
            if e.step is None:
                e.step = step
            raise
        except asyncio.TimeoutError:
            raise CollaboratorError(f"{step.value} timed out after {timeout:g}s", kind=timeout_kind or kind, step=step) from None
        except Exception as e:
            # Collaborators are untrusted; anything else is classified by step.
            raise CollaboratorError(f"{step.value} failed: {type(e).__name__}", kind=kind, step=step) from e

    async def _refresh_after(self, session: Session) -> None:
        if not self._config.refresh_registry:
            return
        try:
            await self.refresh(session)
        except CapsuleError as e:
            # The pipeline already reached its terminal state.
            logger.warning(f"[Orchestrator] Registry refresh failed for {session.owner}: {e}")

    def _record(self, attempt: PipelineAttempt) -> None:
        self.attempts[attempt.key] = attempt
        self.attempts.move_to_end(attempt.key)
        while len(self.attempts) > self._attempt_history:
            self.attempts.popitem(last=False)

    async def _audit(self, attempt: PipelineAttempt) -> None:
        path = self._config.audit_log_path
        if not path:
            return
        capsule = self.registry.get(attempt.capsule_id) if attempt.capsule_id else None
        event = build_audit_event(
            pipeline=attempt.pipeline,
            attempt_key=attempt.key,
            owner=attempt.owner,
            state=attempt.state,
            steps=tuple(attempt.steps),
            capsule=capsule,
            failure=attempt.failure,
            policy=self._config.audit,
        )
        try:
            await asyncio.to_thread(write_audit_event, path, event)
        except OSError as e:
            # The pipeline outcome stands; only the audit trail is missing.
            logger.warning(f"[{attempt.pipeline}:{attempt.key}] Audit write to {path} failed: {e}")


def _parse_wrapped_key(text: str) -> WrappedKey:
    try:
        return WrappedKey.from_text(text)
    except ValueError as e:
        raise AuthenticationFailed("wrapped key is malformed") from e


def _parse_envelope(blob: bytes) -> EncryptionEnvelope:
    try:
        return EncryptionEnvelope.from_bytes(bytes(blob))
    except ValueError as e:
        raise AuthenticationFailed("stored ciphertext is malformed") from e


def _consume_result(task: "asyncio.Future[Any]") -> None:
    if not task.cancelled():
        task.exception()
