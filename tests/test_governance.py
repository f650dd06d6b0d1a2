"""
Threshold-Approval Engine Tests

State machine behavior of OperationEngine: proposal, signing, quorum
execution, signer-set administration and concurrent signers.
"""

import threading

import pytest

from warden.events import (
    CapabilityGranted,
    EventRecorder,
    OperationExecuted,
    OperationProposed,
    OperationSigned,
    QuorumChanged,
)
from warden.governance import (
    OperationEngine,
    OperationKind,
    OperationState,
)
from warden.hardening import (
    AlreadyExecuted,
    AlreadyInState,
    AlreadySigned,
    InvalidArgument,
    NotInState,
    Unauthorized,
    UnknownOperation,
)
from warden.identity import NULL_IDENTITY, Identity
from warden.roles import Capability


# =============================================================================
# SCENARIOS
# =============================================================================

class TestScenarios:
    """End-to-end flows over a fresh deployment."""

    def test_two_of_three_verifies_on_second_signature(self, engine, ids):
        op_id = engine.propose(ids.A, OperationKind.VERIFY_IDENTITY, ids.X)
        assert op_id == 0
        assert engine.signature_count(0) == 1
        assert engine.has_signed(0, ids.A)
        assert not engine.ledger.is_verified(ids.X)
        assert not engine.is_executed(0)

        assert engine.sign(ids.B, 0) is True
        assert engine.ledger.is_verified(ids.X)
        assert engine.is_executed(0)
        assert engine.get_operation(0).state is OperationState.EXECUTED

        with pytest.raises(AlreadyExecuted):
            engine.sign(ids.C, 0)
        assert engine.signature_count(0) == 2

    def test_quorum_of_one_executes_inside_propose(self, solo_engine, ids):
        solo_engine.ledger.verify(ids.A, ids.Y)
        assert solo_engine.ledger.is_verified(ids.Y)

        op_id = solo_engine.propose(ids.A, OperationKind.REVOKE_IDENTITY, ids.Y)

        assert not solo_engine.ledger.is_verified(ids.Y)
        assert solo_engine.is_executed(op_id)

    def test_revoke_through_quorum(self, engine, ids):
        engine.ledger.verify(ids.A, ids.X)
        op_id = engine.propose(ids.B, "revoke_identity", ids.X)
        assert engine.ledger.is_verified(ids.X)
        engine.sign(ids.C, op_id)
        assert not engine.ledger.is_verified(ids.X)


# =============================================================================
# PROPOSE
# =============================================================================

class TestPropose:
    """propose() preconditions and bookkeeping."""

    def test_ids_are_sequential(self, engine, ids):
        assert [engine.propose(ids.A, "verify_identity", t) for t in (ids.X, ids.Y, ids.Z)] == [0, 1, 2]
        assert engine.operation_count == 3

    def test_requires_threshold_signer(self, engine, ids):
        with pytest.raises(Unauthorized):
            engine.propose(ids.OUTSIDER, OperationKind.VERIFY_IDENTITY, ids.X)
        assert engine.operation_count == 0

    def test_null_target_rejected(self, engine, ids):
        with pytest.raises(InvalidArgument):
            engine.propose(ids.A, OperationKind.VERIFY_IDENTITY, NULL_IDENTITY)
        assert not engine.operation_exists(0)

    @pytest.mark.parametrize("kind", ["mint", "", None, 3])
    def test_unknown_kind_rejected(self, engine, ids, kind):
        with pytest.raises(InvalidArgument):
            engine.propose(ids.A, kind, ids.X)

    @pytest.mark.parametrize("kind", [OperationKind.VERIFY_IDENTITY, "verify_identity", "VERIFY_IDENTITY"])
    def test_kind_spellings(self, engine, ids, kind):
        op_id = engine.propose(ids.A, kind, ids.X)
        assert engine.get_operation(op_id).kind is OperationKind.VERIFY_IDENTITY

    def test_kind_and_target_stored_separately(self, engine, ids):
        op_id = engine.propose(ids.A, OperationKind.REVOKE_IDENTITY, ids.Y)
        record = engine.get_operation(op_id).to_dict()
        assert record["kind"] == "revoke_identity"
        assert record["target"] == str(ids.Y)
        assert record["signers"] == [str(ids.A)]
        assert record["created_by"] == str(ids.A)
        assert record["state"] == "proposed"

    def test_events(self, engine, bus, ids):
        recorder = EventRecorder(bus)
        engine.propose(ids.A, OperationKind.VERIFY_IDENTITY, ids.X)
        assert recorder.types() == ["OperationProposed", "OperationSigned"]
        proposed = recorder.of_type(OperationProposed)[0]
        assert (proposed.operation_id, proposed.kind, proposed.target) == (0, "verify_identity", str(ids.X))
        assert recorder.of_type(OperationSigned)[0].actor == str(ids.A)

    def test_events_with_immediate_execution(self, solo_engine, bus, ids):
        recorder = EventRecorder(bus)
        solo_engine.propose(ids.A, OperationKind.VERIFY_IDENTITY, ids.X)
        assert recorder.types() == [
            "OperationProposed", "OperationSigned", "IdentityVerified", "OperationExecuted",
        ]

    def test_rejected_dispatch_records_nothing(self, solo_engine, ids):
        """With a quorum of one, a ledger conflict fails propose and allocates no id."""
        with pytest.raises(NotInState):
            solo_engine.propose(ids.A, OperationKind.REVOKE_IDENTITY, ids.X)
        assert solo_engine.operation_count == 0
        assert solo_engine.propose(ids.A, OperationKind.VERIFY_IDENTITY, ids.X) == 0


# =============================================================================
# SIGN
# =============================================================================

class TestSign:
    """sign() ordering of checks and quorum firing."""

    def test_unknown_operation(self, engine, ids):
        with pytest.raises(UnknownOperation) as exc:
            engine.sign(ids.B, 7)
        assert exc.value.operation_id == 7

    @pytest.mark.parametrize("operation_id", [True, False, "1", 1.0, None])
    def test_non_integer_operation_id_rejected(self, engine, ids, operation_id):
        engine.propose(ids.A, OperationKind.VERIFY_IDENTITY, ids.X)
        engine.propose(ids.A, OperationKind.VERIFY_IDENTITY, ids.Y)
        with pytest.raises(InvalidArgument):
            engine.sign(ids.B, operation_id)
        assert engine.signature_count(0) == 1
        assert engine.signature_count(1) == 1
        assert not engine.ledger.is_verified(ids.Y)

    def test_requires_threshold_signer(self, engine, ids):
        engine.propose(ids.A, OperationKind.VERIFY_IDENTITY, ids.X)
        with pytest.raises(Unauthorized):
            engine.sign(ids.OUTSIDER, 0)
        assert engine.signature_count(0) == 1

    def test_proposer_cannot_sign_again(self, engine, ids):
        engine.propose(ids.A, OperationKind.VERIFY_IDENTITY, ids.X)
        with pytest.raises(AlreadySigned):
            engine.sign(ids.A, 0)
        assert engine.signature_count(0) == 1

    def test_repeat_signer_after_execution_gets_already_signed(self, engine, ids):
        engine.propose(ids.A, OperationKind.VERIFY_IDENTITY, ids.X)
        engine.sign(ids.B, 0)
        with pytest.raises(AlreadySigned):
            engine.sign(ids.B, 0)
        with pytest.raises(AlreadySigned):
            engine.sign(ids.A, 0)

    def test_fires_exactly_at_quorum(self, ids, bus):
        signers = [Identity(f"0x{n:040x}") for n in range(1, 6)]
        engine = OperationEngine(
            deployer=signers[0], signers=signers[1:], required_signatures=4, bus=bus,
        )
        recorder = EventRecorder(bus)
        engine.propose(signers[0], OperationKind.VERIFY_IDENTITY, ids.X)

        assert engine.sign(signers[1], 0) is False
        assert engine.sign(signers[2], 0) is False
        assert not engine.ledger.is_verified(ids.X)
        assert engine.sign(signers[3], 0) is True
        assert engine.ledger.is_verified(ids.X)

        with pytest.raises(AlreadyExecuted):
            engine.sign(signers[4], 0)
        assert len(recorder.of_type(OperationExecuted)) == 1
        assert engine.signature_count(0) == 4

    def test_signed_event_carries_count(self, engine, bus, ids):
        engine.propose(ids.A, OperationKind.VERIFY_IDENTITY, ids.X)
        recorder = EventRecorder(bus)
        engine.sign(ids.C, 0)
        signed = recorder.of_type(OperationSigned)[0]
        assert (signed.actor, signed.signature_count) == (str(ids.C), 2)
        executed = recorder.of_type(OperationExecuted)[0]
        assert executed.actor == str(ids.C)

    def test_rejected_dispatch_keeps_operation_pending(self, engine, ids):
        """Quorum signature fails with the ledger's error and is not recorded."""
        engine.propose(ids.A, OperationKind.VERIFY_IDENTITY, ids.X)
        engine.ledger.verify(ids.A, ids.X)

        with pytest.raises(AlreadyInState):
            engine.sign(ids.B, 0)
        assert engine.signature_count(0) == 1
        assert not engine.has_signed(0, ids.B)
        assert not engine.is_executed(0)

    def test_engine_acts_as_its_own_identity(self, engine, bus, ids):
        recorder = EventRecorder(bus)
        engine.propose(ids.A, OperationKind.VERIFY_IDENTITY, ids.X)
        engine.sign(ids.B, 0)
        verified = [e for e in recorder.events if e.event_type == "IdentityVerified"]
        assert verified[0].actor == str(ids.ENGINE)


# =============================================================================
# READS
# =============================================================================

class TestReads:
    """Reads never raise for unknown ids."""

    def test_unknown_ids(self, engine, ids):
        assert engine.signature_count(99) == 0
        assert engine.has_signed(99, ids.A) is False
        assert engine.operation_exists(99) is False
        assert engine.is_executed(99) is False
        assert engine.get_operation(99) is None

    def test_bool_ids_do_not_alias_integers(self, engine, ids):
        engine.propose(ids.A, OperationKind.VERIFY_IDENTITY, ids.X)
        engine.propose(ids.A, OperationKind.VERIFY_IDENTITY, ids.Y)
        assert engine.has_signed(True, ids.A) is False
        assert engine.signature_count(True) == 0
        assert engine.operation_exists(False) is False
        assert engine.get_operation(True) is None

    def test_get_operation_returns_copy(self, engine, ids):
        engine.propose(ids.A, OperationKind.VERIFY_IDENTITY, ids.X)
        snapshot = engine.get_operation(0)
        snapshot.signers.append(ids.B)
        assert engine.signature_count(0) == 1

    def test_list_operations_filter(self, engine, ids):
        engine.propose(ids.A, OperationKind.VERIFY_IDENTITY, ids.X)
        engine.propose(ids.A, OperationKind.VERIFY_IDENTITY, ids.Y)
        engine.sign(ids.B, 1)

        assert [op.operation_id for op in engine.list_operations()] == [0, 1]
        assert [op.operation_id for op in engine.list_operations(executed=True)] == [1]
        assert [op.operation_id for op in engine.list_operations(executed=False)] == [0]

        exported = engine.export_operations()
        assert exported[1]["state"] == "executed"
        assert exported[1]["executed_at"] is not None


# =============================================================================
# BOOTSTRAP
# =============================================================================

class TestBootstrap:
    """Deployment-time invariants."""

    def test_deployer_holds_all_capabilities(self, engine, ids):
        assert engine.roles.capabilities_of(ids.A) == frozenset(Capability)

    def test_initial_signers(self, engine, ids):
        assert engine.signers == frozenset({ids.A, ids.B, ids.C})
        assert engine.required_signatures == 2

    def test_engine_identity_is_verifier_only(self, engine, ids):
        assert engine.roles.capabilities_of(ids.ENGINE) == frozenset({Capability.VERIFIER})

    def test_engine_identity_keeps_verifier(self, engine, ids):
        with pytest.raises(InvalidArgument):
            engine.revoke_capability(ids.A, ids.ENGINE, Capability.VERIFIER)
        with pytest.raises(InvalidArgument):
            engine.ledger.revoke_verifier(ids.A, ids.ENGINE)
        assert engine.roles.has(ids.ENGINE, Capability.VERIFIER)

        engine.propose(ids.A, OperationKind.VERIFY_IDENTITY, ids.X)
        assert engine.sign(ids.B, 0) is True
        assert engine.ledger.is_verified(ids.X)

    def test_engine_identity_protection_still_requires_admin(self, engine, ids):
        with pytest.raises(Unauthorized):
            engine.ledger.revoke_verifier(ids.B, ids.ENGINE)

    def test_quorum_above_signer_count_rejected(self, ids):
        with pytest.raises(InvalidArgument):
            OperationEngine(deployer=ids.A, signers=[ids.B], required_signatures=3)

    @pytest.mark.parametrize("required", [0, -1, True, "2"])
    def test_bad_quorum_rejected(self, ids, required):
        with pytest.raises(InvalidArgument):
            OperationEngine(deployer=ids.A, signers=[ids.B], required_signatures=required)

    def test_default_quorum_from_config(self, ids, monkeypatch):
        monkeypatch.setenv("WARDEN_GOVERNANCE_QUORUM", "2")
        engine = OperationEngine(deployer=ids.A, signers=[ids.B, ids.C])
        assert engine.required_signatures == 2

    def test_default_quorum_clamped_to_signers(self, ids, monkeypatch):
        monkeypatch.setenv("WARDEN_GOVERNANCE_QUORUM", "5")
        engine = OperationEngine(deployer=ids.A, signers=[ids.B])
        assert engine.required_signatures == 2

    def test_bootstrap_events(self, ids, bus, recorder):
        OperationEngine(deployer=ids.A, signers=[ids.B], required_signatures=1, bus=bus, identity=ids.ENGINE)
        granted = [(e.identity, e.capability) for e in recorder.of_type(CapabilityGranted)]
        assert (str(ids.A), "admin") in granted
        assert (str(ids.B), "threshold_signer") in granted
        assert (str(ids.ENGINE), "verifier") in granted


# =============================================================================
# SIGNER ADMINISTRATION
# =============================================================================

class TestSignerAdministration:
    """add_signer / remove_signer / set_required_signatures."""

    def test_add_signer(self, engine, ids):
        assert engine.add_signer(ids.A, ids.D) is True
        assert engine.add_signer(ids.A, ids.D) is False
        engine.propose(ids.D, OperationKind.VERIFY_IDENTITY, ids.X)

    def test_add_signer_requires_admin(self, engine, ids):
        with pytest.raises(Unauthorized):
            engine.add_signer(ids.B, ids.D)
        assert ids.D not in engine.signers

    def test_remove_signer_clamps_quorum(self, engine, bus, ids):
        engine.set_required_signatures(ids.A, 3)
        recorder = EventRecorder(bus)

        engine.remove_signer(ids.A, ids.C)

        assert engine.required_signatures == 2
        changed = recorder.of_type(QuorumChanged)
        assert [(e.old_required, e.new_required) for e in changed] == [(3, 2)]

    def test_remove_signer_without_clamp(self, engine, bus, ids):
        recorder = EventRecorder(bus)
        engine.remove_signer(ids.A, ids.C)
        assert engine.required_signatures == 2
        assert recorder.of_type(QuorumChanged) == []

    def test_clamp_invariant_over_removal_sequence(self, ids):
        signers = [Identity(f"0x{n:040x}") for n in range(1, 7)]
        engine = OperationEngine(deployer=signers[0], signers=signers[1:], required_signatures=6)
        for s in signers[1:]:
            engine.remove_signer(signers[0], s)
            assert 1 <= engine.required_signatures <= len(engine.signers)
        assert engine.required_signatures == 1

    def test_cannot_remove_last_signer(self, solo_engine, ids):
        with pytest.raises(InvalidArgument):
            solo_engine.remove_signer(ids.A, ids.A)
        assert solo_engine.signers == frozenset({ids.A})

    def test_remove_unheld_is_noop(self, engine, ids):
        assert engine.remove_signer(ids.A, ids.OUTSIDER) is False

    def test_removed_signer_cannot_sign(self, engine, ids):
        engine.propose(ids.A, OperationKind.VERIFY_IDENTITY, ids.X)
        engine.remove_signer(ids.A, ids.B)
        with pytest.raises(Unauthorized):
            engine.sign(ids.B, 0)

    def test_existing_signatures_survive_removal(self, engine, ids):
        engine.set_required_signatures(ids.A, 3)
        engine.propose(ids.B, OperationKind.VERIFY_IDENTITY, ids.X)
        engine.remove_signer(ids.A, ids.B)
        assert engine.signature_count(0) == 1
        assert engine.has_signed(0, ids.B)
        # quorum is now 2: one more signature executes
        assert engine.sign(ids.C, 0) is True

    def test_clamp_executes_operation_that_meets_new_quorum(self, engine, bus, ids):
        engine.set_required_signatures(ids.A, 3)
        engine.propose(ids.A, OperationKind.VERIFY_IDENTITY, ids.X)
        engine.sign(ids.B, 0)
        recorder = EventRecorder(bus)

        assert engine.remove_signer(ids.A, ids.C) is True

        assert engine.required_signatures == 2
        assert engine.is_executed(0)
        assert engine.ledger.is_verified(ids.X)
        assert recorder.types() == [
            "CapabilityRevoked", "QuorumChanged", "IdentityVerified", "OperationExecuted",
        ]
        assert recorder.of_type(OperationExecuted)[0].actor == str(ids.A)

    def test_clamp_leaves_short_operations_pending(self, engine, ids):
        engine.set_required_signatures(ids.A, 3)
        engine.propose(ids.A, OperationKind.VERIFY_IDENTITY, ids.X)
        engine.remove_signer(ids.A, ids.C)
        assert engine.required_signatures == 2
        assert not engine.is_executed(0)
        assert engine.sign(ids.B, 0) is True

    def test_lowering_quorum_executes_ready_operations(self, engine, bus, ids):
        engine.set_required_signatures(ids.A, 3)
        engine.propose(ids.A, OperationKind.VERIFY_IDENTITY, ids.X)
        engine.sign(ids.B, 0)
        engine.propose(ids.C, OperationKind.VERIFY_IDENTITY, ids.Y)
        recorder = EventRecorder(bus)

        engine.set_required_signatures(ids.A, 2)

        assert engine.is_executed(0)
        assert not engine.is_executed(1)
        assert engine.ledger.is_verified(ids.X)
        assert not engine.ledger.is_verified(ids.Y)
        assert recorder.types() == ["QuorumChanged", "IdentityVerified", "OperationExecuted"]

    def test_raising_quorum_executes_nothing(self, engine, bus, ids):
        engine.propose(ids.A, OperationKind.VERIFY_IDENTITY, ids.X)
        recorder = EventRecorder(bus)
        engine.set_required_signatures(ids.A, 3)
        assert not engine.is_executed(0)
        assert recorder.types() == ["QuorumChanged"]

    def test_unchanged_quorum_publishes_nothing(self, engine, bus, ids):
        recorder = EventRecorder(bus)
        engine.set_required_signatures(ids.A, 2)
        assert recorder.events == []

    def test_ledger_rejection_on_lowered_quorum_keeps_operation_pending(self, engine, ids):
        engine.set_required_signatures(ids.A, 3)
        engine.propose(ids.A, OperationKind.VERIFY_IDENTITY, ids.X)
        engine.sign(ids.B, 0)
        engine.ledger.verify(ids.A, ids.X)

        engine.set_required_signatures(ids.A, 2)

        assert engine.required_signatures == 2
        assert not engine.is_executed(0)
        assert engine.get_operation(0).state is OperationState.PROPOSED
        assert engine.signature_count(0) == 2

    def test_set_required_signatures_bounds(self, engine, ids):
        with pytest.raises(InvalidArgument):
            engine.set_required_signatures(ids.A, 0)
        with pytest.raises(InvalidArgument):
            engine.set_required_signatures(ids.A, 4)
        with pytest.raises(Unauthorized):
            engine.set_required_signatures(ids.B, 1)
        assert engine.required_signatures == 2

    def test_max_signers(self, ids):
        from warden.config import get_config_manager

        get_config_manager().set("governance.max_signers", 3)
        engine = OperationEngine(deployer=ids.A, signers=[ids.B, ids.C], required_signatures=1)
        with pytest.raises(InvalidArgument):
            engine.add_signer(ids.A, ids.D)
        with pytest.raises(InvalidArgument):
            OperationEngine(deployer=ids.A, signers=[ids.B, ids.C, ids.D])

    def test_grant_capability_by_name(self, engine, ids):
        assert engine.grant_capability(ids.A, ids.D, "verifier") is True
        engine.ledger.verify(ids.D, ids.X)
        assert engine.revoke_capability(ids.A, ids.D, Capability.VERIFIER) is True
        with pytest.raises(InvalidArgument):
            engine.grant_capability(ids.A, ids.D, "superuser")


# =============================================================================
# CONCURRENCY
# =============================================================================

def _run_concurrently(fns):
    barrier = threading.Barrier(len(fns))
    results = [None] * len(fns)

    def wrap(i, fn):
        barrier.wait()
        try:
            results[i] = ("ok", fn())
        except Exception as e:  # collected for assertions
            results[i] = ("error", e)

    threads = [threading.Thread(target=wrap, args=(i, fn)) for i, fn in enumerate(fns)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return results


class TestConcurrency:
    """Quorum check, append and dispatch are atomic per operation."""

    def test_concurrent_signers_execute_once(self, ids, bus):
        signers = [Identity(f"0x{n:040x}") for n in range(1, 17)]
        engine = OperationEngine(deployer=signers[0], signers=signers[1:], required_signatures=3, bus=bus)
        recorder = EventRecorder(bus)
        engine.propose(signers[0], OperationKind.VERIFY_IDENTITY, ids.X)

        results = _run_concurrently([lambda s=s: engine.sign(s, 0) for s in signers[1:]])

        executed = [r for kind, r in results if kind == "ok" and r is True]
        late = [r for kind, r in results if kind == "error"]
        assert len(executed) == 1
        assert all(isinstance(e, AlreadyExecuted) for e in late)
        assert engine.signature_count(0) == 3
        assert len(recorder.of_type(OperationExecuted)) == 1
        assert engine.ledger.is_verified(ids.X)

    def test_concurrent_duplicate_signature_registers_once(self, ids):
        signers = [Identity(f"0x{n:040x}") for n in range(1, 5)]
        engine = OperationEngine(deployer=signers[0], signers=signers[1:], required_signatures=4)
        engine.propose(signers[0], OperationKind.VERIFY_IDENTITY, ids.X)

        results = _run_concurrently([lambda: engine.sign(signers[1], 0) for _ in range(10)])

        assert sum(1 for kind, _ in results if kind == "ok") == 1
        assert all(isinstance(r, AlreadySigned) for kind, r in results if kind == "error")
        assert engine.signature_count(0) == 2

    def test_concurrent_proposals_get_unique_ids(self, engine, ids):
        targets = [Identity(f"0x{n:040x}") for n in range(1000, 1040)]
        results = _run_concurrently(
            [lambda t=t: engine.propose(ids.A, OperationKind.VERIFY_IDENTITY, t) for t in targets]
        )
        op_ids = sorted(r for _, r in results)
        assert op_ids == list(range(len(targets)))

    @pytest.mark.slow
    def test_many_operations_in_parallel(self, ids):
        signers = [Identity(f"0x{n:040x}") for n in range(1, 9)]
        engine = OperationEngine(deployer=signers[0], signers=signers[1:], required_signatures=5)
        targets = [Identity(f"0x{n:040x}") for n in range(5000, 5200)]
        for t in targets:
            engine.propose(signers[0], OperationKind.VERIFY_IDENTITY, t)

        calls = [
            (lambda s=s, op=op: engine.sign(s, op))
            for op in range(len(targets))
            for s in signers[1:]
        ]
        _run_concurrently(calls)

        assert all(engine.is_executed(op) for op in range(len(targets)))
        assert engine.ledger.verified_identities() == frozenset(targets)
