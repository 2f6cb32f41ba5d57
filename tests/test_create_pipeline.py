from __future__ import annotations

import asyncio
import json
import os
import tempfile
import unittest
from datetime import timedelta
from unittest import mock

from contracts import (
    AuthenticationFailed,
    Classification,
    CollaboratorError,
    CryptoUnavailable,
    CreateCapsuleRequest,
    ErrorKind,
    Geofence,
    LifecycleState,
    PipelineStep,
    Session,
    ValidationError,
    WrappedKey,
)
from envelope_crypto import EncryptionEngine
from orchestrator import CapsuleLifecycleOrchestrator, OrchestratorConfig
from tests.fakes import FakeClock, HangingSigner, RecordingEngine, RecordingLedger, RecordingSigner, RecordingStorage


class CreatePipelineCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.clock = FakeClock()
        self.ledger = RecordingLedger(clock=self.clock)
        self.storage = RecordingStorage()
        self.signer = RecordingSigner()
        self.session = Session(owner="0xowner", signer=self.signer)

    def orchestrator(self, *, engine: EncryptionEngine | None = None, **config) -> CapsuleLifecycleOrchestrator:
        return CapsuleLifecycleOrchestrator(
            self.ledger,
            self.storage,
            engine=engine,
            config=OrchestratorConfig(**config),
            clock=self.clock,
        )

    def request(self, plaintext: bytes = b"dear future me", **kw) -> CreateCapsuleRequest:
        kw.setdefault("unlock_timestamp", self.clock() + timedelta(seconds=1000))
        return CreateCapsuleRequest(plaintext=plaintext, title="letter", **kw)


class TestCreatePipeline(CreatePipelineCase):
    async def test_seals_capsule_and_registers_wrapped_key(self) -> None:
        orch = self.orchestrator()
        fence = Geofence(latitude=35.1427, longitude=-79.0059, radius_meters=500)
        result = await orch.create_capsule(
            self.session,
            self.request(classification=Classification.CRITICAL, geofence=fence),
            draft_id="d1",
        )

        self.assertEqual("1", result.capsule_id)
        self.assertTrue(result.transaction_receipt.startswith("0x"))
        self.assertIn(result.content_pointer, self.storage)
        self.assertEqual(LifecycleState.SEALED, result.capsule.lifecycle_state)
        self.assertAlmostEqual(fence.latitude, result.capsule.geofence.latitude, places=5)
        self.assertAlmostEqual(fence.longitude, result.capsule.geofence.longitude, places=5)
        self.assertEqual(500, result.capsule.geofence.radius_meters)
        self.assertEqual(Classification.CRITICAL, result.capsule.classification)
        self.assertEqual(["put"], self.storage.calls)
        self.assertEqual("register", self.ledger.calls[0])
        self.assertEqual(1, self.signer.calls)

        attempt = orch.attempts["draft:d1"]
        self.assertEqual(LifecycleState.SEALED, attempt.state)
        self.assertEqual(
            ["generate_key", "encrypt", "upload", "sign", "derive_key", "wrap_key", "register"],
            attempt.steps,
        )
        self.assertIs(orch.registry.get("1"), result.capsule)

    async def test_stored_bytes_are_ciphertext_and_key_is_recoverable_by_signer(self) -> None:
        orch = self.orchestrator()
        result = await orch.create_capsule(self.session, self.request(b"top secret payload"))

        blob = await self.storage.get(result.content_pointer)
        self.assertNotIn(b"top secret payload", blob)

        engine = EncryptionEngine()
        signature = await RecordingSigner().sign(orch.config.challenge)
        wrapped = WrappedKey.from_text(result.capsule.wrapped_content_key)
        content_key = engine.unwrap_key(wrapped, engine.derive_wrapping_key(signature))
        self.assertEqual(32, len(content_key.material))

        wrong = await RecordingSigner(seed=bytes(32)).sign(orch.config.challenge)
        with self.assertRaises(AuthenticationFailed):
            engine.unwrap_key(wrapped, engine.derive_wrapping_key(wrong))

    async def test_empty_plaintext_rejected_before_any_collaborator_call(self) -> None:
        orch = self.orchestrator()
        with self.assertRaises(ValidationError) as ctx:
            await orch.create_capsule(self.session, self.request(b""))
        self.assertEqual(PipelineStep.VALIDATE, ctx.exception.step)
        self.assertEqual([], self.storage.calls)
        self.assertEqual([], self.ledger.calls)
        self.assertEqual(0, self.signer.calls)
        self.assertEqual({}, orch.attempts)

    async def test_past_unlock_time_and_bad_radius_rejected(self) -> None:
        orch = self.orchestrator()
        with self.assertRaises(ValidationError):
            await orch.create_capsule(self.session, self.request(unlock_timestamp=self.clock()))
        with self.assertRaises(ValidationError):
            await orch.create_capsule(
                self.session,
                self.request(geofence=Geofence(latitude=0, longitude=0, radius_meters=0)),
            )
        self.assertEqual([], self.storage.calls)

    async def test_storage_failure_is_hard_error_with_no_ledger_write(self) -> None:
        self.storage.fail_put = ConnectionError("gateway down")
        orch = self.orchestrator()
        with self.assertRaises(CollaboratorError) as ctx:
            await orch.create_capsule(self.session, self.request(), draft_id="d2")

        self.assertEqual(ErrorKind.STORAGE_UNAVAILABLE, ctx.exception.kind)
        self.assertEqual(PipelineStep.UPLOAD, ctx.exception.step)
        self.assertEqual([], self.ledger.calls)
        self.assertEqual(0, self.signer.calls)
        attempt = orch.attempts["draft:d2"]
        self.assertEqual(LifecycleState.FAILED, attempt.state)
        self.assertEqual(("StorageUnavailable", "upload"), (attempt.failure.kind, attempt.failure.step))
        self.assertEqual(0, len(orch.registry))

    async def test_user_declined_signature(self) -> None:
        self.session = Session(owner="0xowner", signer=RecordingSigner(error=ErrorKind.USER_DECLINED))
        orch = self.orchestrator()
        with self.assertRaises(CollaboratorError) as ctx:
            await orch.create_capsule(self.session, self.request())
        self.assertEqual(ErrorKind.USER_DECLINED, ctx.exception.kind)
        self.assertEqual(PipelineStep.SIGN, ctx.exception.step)
        self.assertEqual([], self.ledger.calls)

    async def test_signer_timeout_surfaces_as_signer_unavailable(self) -> None:
        self.session = Session(owner="0xowner", signer=HangingSigner())
        orch = self.orchestrator(signer_timeout_s=0.05)
        with self.assertRaises(CollaboratorError) as ctx:
            await orch.create_capsule(self.session, self.request())
        self.assertEqual(ErrorKind.SIGNER_UNAVAILABLE, ctx.exception.kind)
        self.assertEqual(PipelineStep.SIGN, ctx.exception.step)

    async def test_ledger_rejection_leaves_uploaded_ciphertext_orphaned(self) -> None:
        self.ledger.fail_register = CollaboratorError("out of gas", kind=ErrorKind.LEDGER_REJECTED)
        orch = self.orchestrator()
        with self.assertRaises(CollaboratorError) as ctx:
            await orch.create_capsule(self.session, self.request())
        self.assertEqual(ErrorKind.LEDGER_REJECTED, ctx.exception.kind)
        self.assertEqual(PipelineStep.REGISTER, ctx.exception.step)
        self.assertEqual(1, len(self.storage))
        self.assertEqual(0, len(orch.registry))

    async def test_retry_uploads_fresh_ciphertext(self) -> None:
        orch = self.orchestrator()
        first = await orch.create_capsule(self.session, self.request(b"same"))
        second = await orch.create_capsule(self.session, self.request(b"same"))
        self.assertNotEqual(first.content_pointer, second.content_pointer)
        self.assertEqual(2, len(orch.registry))

    async def test_audit_event_written_on_terminal_state(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = os.path.join(td, "audit.jsonl")
            orch = self.orchestrator(audit_log_path=path)
            result = await orch.create_capsule(self.session, self.request())
            self.storage.fail_put = ConnectionError("down")
            with self.assertRaises(CollaboratorError):
                await orch.create_capsule(self.session, self.request())

            with open(path, "r", encoding="utf-8") as f:
                events = [json.loads(ln) for ln in f if ln.strip()]

        self.assertEqual(["sealed", "failed"], [e["state"] for e in events])
        self.assertEqual(result.capsule_id, events[0]["capsule_id"])
        self.assertNotIn(result.capsule.wrapped_content_key, json.dumps(events))
        self.assertEqual({"kind": "StorageUnavailable", "step": "upload"}, events[1]["failure"])

    async def test_content_descriptor_is_registered(self) -> None:
        orch = self.orchestrator()
        result = await orch.create_capsule(
            self.session,
            self.request(b"%PDF-1.7 ...", content_name="orders.pdf", content_type="application/pdf"),
        )
        capsule = orch.registry.get(result.capsule_id)
        self.assertEqual("orders.pdf", capsule.content_name)
        self.assertEqual("application/pdf", capsule.content_type)
        self.assertEqual(12, capsule.content_size)

    async def test_missing_randomness_is_crypto_unavailable(self) -> None:
        orch = self.orchestrator()
        with mock.patch("envelope_crypto.engine.os.urandom", side_effect=NotImplementedError):
            with self.assertRaises(CryptoUnavailable) as ctx:
                await orch.create_capsule(self.session, self.request(), draft_id="no-rng")
        self.assertEqual(ErrorKind.CRYPTO_UNAVAILABLE, ctx.exception.kind)
        self.assertEqual(PipelineStep.GENERATE_KEY, ctx.exception.step)
        self.assertEqual([], self.storage.calls)

    async def test_keys_wiped_after_seal_and_after_failure(self) -> None:
        engine = RecordingEngine()
        orch = self.orchestrator(engine=engine)
        await orch.create_capsule(self.session, self.request())
        self.assertEqual(2, len(engine.keys))

        self.storage.fail_put = ConnectionError("down")
        with self.assertRaises(CollaboratorError):
            await orch.create_capsule(self.session, self.request())

        self.assertEqual(3, len(engine.keys))
        self.assertTrue(all(k.wiped for k in engine.keys))

    async def test_unwritable_audit_log_does_not_mask_outcome(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            orch = self.orchestrator(audit_log_path=td)
            with self.assertLogs("orchestrator.pipeline", level="WARNING") as logs:
                result = await orch.create_capsule(self.session, self.request())
            self.assertEqual(LifecycleState.SEALED, result.capsule.lifecycle_state)
            self.assertTrue(any("Audit write" in line for line in logs.output))

            self.storage.fail_put = ConnectionError("down")
            with self.assertRaises(CollaboratorError) as ctx:
                await orch.create_capsule(self.session, self.request())
        self.assertEqual(ErrorKind.STORAGE_UNAVAILABLE, ctx.exception.kind)
        self.assertEqual(PipelineStep.UPLOAD, ctx.exception.step)
        self.assertEqual(1, len(self.ledger))

    async def test_sealed_capsule_survives_lagging_ledger_listing(self) -> None:
        self.ledger.listing_lag = True
        orch = self.orchestrator()
        result = await orch.create_capsule(self.session, self.request())
        self.assertIn(result.capsule_id, orch.registry)

        self.ledger.listing_lag = False
        await orch.refresh(self.session)
        self.assertIn(result.capsule_id, orch.registry)

    async def test_attempt_history_is_bounded(self) -> None:
        orch = CapsuleLifecycleOrchestrator(self.ledger, self.storage, clock=self.clock, attempt_history=5)
        for i in range(12):
            await orch.create_capsule(self.session, self.request(), draft_id=str(i))
        self.assertEqual([f"draft:{i}" for i in range(7, 12)], list(orch.attempts))


class TestCreateCancellation(CreatePipelineCase):
    async def test_cancel_after_upload_runs_to_terminal_state(self) -> None:
        self.storage.put_delay = 0.05
        orch = self.orchestrator()
        task = asyncio.ensure_future(orch.create_capsule(self.session, self.request(), draft_id="c1"))
        await asyncio.sleep(0.01)
        self.assertEqual(["put"], self.storage.calls)

        task.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await task

        for _ in range(100):
            if orch.attempts["draft:c1"].state.terminal:
                break
            await asyncio.sleep(0.01)
        self.assertEqual(LifecycleState.SEALED, orch.attempts["draft:c1"].state)
        self.assertEqual(1, len(orch.registry))

    async def test_cancel_while_waiting_for_guard_has_no_side_effects(self) -> None:
        self.storage.put_delay = 0.05
        orch = self.orchestrator()
        first = asyncio.ensure_future(orch.create_capsule(self.session, self.request(), draft_id="same"))
        await asyncio.sleep(0.01)
        second = asyncio.ensure_future(orch.create_capsule(self.session, self.request(), draft_id="same"))
        await asyncio.sleep(0.01)

        second.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await second
        await first
        self.assertEqual(["put"], self.storage.calls)
        self.assertEqual(1, len(orch.registry))


if __name__ == "__main__":
    unittest.main()
