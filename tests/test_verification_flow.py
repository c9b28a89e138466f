import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from app.core.exceptions import (
    AccountBlockedError,
    CollaboratorError,
    InvalidTransitionError,
    PolicyViolation,
    UnknownTransactionError,
    ValidationError,
)
from app.domain.entities.risk import (
    AccountStatus,
    LocationStatus,
    NotificationType,
    RiskTier,
    TransactionCategory,
    TransactionStatus,
)
from app.domain.services.verification_flow import ProcessState, VerificationWorkflow, generate_otp, to_naive_utc
from app.domain.services.verification_policy import VerificationPath

from conftest import NOW, dark_sample, make_tx, ramp_sample

BENGALURU = "Bengaluru, India"


async def submit_low(orchestrator, **kwargs):
    return await orchestrator.submit_transaction(
        "acc-1", "alice@upi", 500, TransactionCategory.UPI,
        location_status=LocationStatus.SUCCESS, place_name=BENGALURU, **kwargs,
    )


async def submit_medium(orchestrator, recipient="bob@upi"):
    # destinatario nuevo (+25) y ubicacion no disponible (+20) = 45
    return await orchestrator.submit_transaction(
        "acc-1", recipient, 500, TransactionCategory.UPI,
        location_status=LocationStatus.UNAVAILABLE,
    )


async def submit_high(orchestrator):
    # destinatario nuevo (+25) y ubicacion denegada (+50) = 75
    return await orchestrator.submit_transaction(
        "acc-1", "mallory@upi", 500, TransactionCategory.UPI,
        location_status=LocationStatus.DENIED,
    )


class TestSubmission:
    @pytest.mark.asyncio
    async def test_low_risk_is_approved_and_persisted(self, orchestrator, ledger):
        tx_id = await submit_low(orchestrator)

        workflow = orchestrator.get_workflow(tx_id)
        assert workflow.state == ProcessState.APPROVED
        assert workflow.assessment.tier == RiskTier.LOW
        assert workflow.requirement.path == VerificationPath.AUTO_APPROVE
        assert ledger.transactions[tx_id].status == TransactionStatus.APPROVED
        assert ledger.transactions[tx_id].risk_score == workflow.assessment.score

    @pytest.mark.asyncio
    async def test_medium_risk_waits_for_user(self, orchestrator, ledger, notifier):
        tx_id = await submit_medium(orchestrator)

        workflow = orchestrator.get_workflow(tx_id)
        assert workflow.state == ProcessState.AWAITING_USER_ACTION
        assert workflow.assessment.tier == RiskTier.MEDIUM
        assert workflow.requirement.path == VerificationPath.OTP
        assert ledger.transactions[tx_id].status == TransactionStatus.PENDING
        assert notifier.sent == []

    @pytest.mark.asyncio
    async def test_high_risk_sends_alert(self, orchestrator, notifier):
        tx_id = await submit_high(orchestrator)

        assert orchestrator.get_workflow(tx_id).requirement.path == VerificationPath.BIOMETRIC
        alerts = notifier.of_type(NotificationType.HIGH_RISK_TRANSACTION)
        assert len(alerts) == 1
        assert alerts[0]["transaction_id"] == tx_id

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount,recipient", [(0, "alice@upi"), (-5, "alice@upi"), (500, "")])
    async def test_invalid_submission_stays_idle(self, orchestrator, ledger, amount, recipient):
        before = dict(ledger.transactions)

        with pytest.raises(ValidationError):
            await orchestrator.submit_transaction("acc-1", recipient, amount, TransactionCategory.UPI)

        assert orchestrator.active_workflows == []
        assert ledger.transactions == before

    @pytest.mark.asyncio
    async def test_unknown_account(self, orchestrator):
        with pytest.raises(ValidationError):
            await orchestrator.submit_transaction("nope", "alice@upi", 100, TransactionCategory.UPI)

    @pytest.mark.asyncio
    async def test_blocked_account_cannot_submit(self, orchestrator, identity):
        identity.accounts["acc-1"].status = AccountStatus.BLOCKED

        with pytest.raises(AccountBlockedError):
            await submit_low(orchestrator)
        assert orchestrator.active_workflows == []

    @pytest.mark.asyncio
    async def test_velocity_violation_is_rejected_before_scoring(self, orchestrator, ledger):
        seed = make_tx(amount=95_000, when=NOW.replace(hour=9))
        ledger.transactions[seed.id] = seed

        with pytest.raises(PolicyViolation) as exc:
            await orchestrator.submit_transaction("acc-1", "alice@upi", 6_000, TransactionCategory.UPI)

        assert exc.value.details["window"] == "daily"
        assert orchestrator.active_workflows == []
        assert len(ledger.transactions) == 7

    @pytest.mark.asyncio
    async def test_high_value_waits_for_pre_confirmation(self, orchestrator, ledger):
        tx_id = await orchestrator.submit_transaction(
            "acc-1", "alice@upi", 12_000, TransactionCategory.UPI,
            location_status=LocationStatus.SUCCESS, place_name=BENGALURU,
        )

        workflow = orchestrator.get_workflow(tx_id)
        assert workflow.state == ProcessState.AWAITING_PRE_CONFIRMATION
        assert workflow.assessment is None
        assert tx_id not in ledger.transactions

        state = await orchestrator.confirm_high_value(tx_id)

        assert state in (ProcessState.APPROVED, ProcessState.AWAITING_USER_ACTION)
        assert tx_id in ledger.transactions

    @pytest.mark.asyncio
    async def test_high_value_already_confirmed_skips_gate(self, orchestrator):
        tx_id = await orchestrator.submit_transaction(
            "acc-1", "alice@upi", 12_000, TransactionCategory.UPI,
            location_status=LocationStatus.SUCCESS, place_name=BENGALURU,
            high_value_confirmed=True,
        )

        assert orchestrator.get_workflow(tx_id).state != ProcessState.AWAITING_PRE_CONFIRMATION

    @pytest.mark.asyncio
    async def test_ledger_failure_moves_to_error_without_writes(self, orchestrator, ledger):
        ledger.fail_on.add("get_history")
        before = dict(ledger.transactions)

        with pytest.raises(CollaboratorError) as exc:
            await submit_low(orchestrator)

        workflow = orchestrator.get_workflow(exc.value.transaction_id)
        assert workflow.state == ProcessState.ERROR
        assert "Risk analysis failed" in workflow.error
        assert ledger.transactions == before

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "submitted_at",
        [
            NOW.replace(tzinfo=timezone.utc),
            datetime(2026, 3, 10, 19, 30, tzinfo=timezone(timedelta(hours=5, minutes=30))),
        ],
    )
    async def test_timezone_aware_timestamp_is_stored_as_utc(self, orchestrator, ledger, submitted_at):
        tx_id = await submit_low(orchestrator, submitted_at=submitted_at)

        assert orchestrator.get_workflow(tx_id).state == ProcessState.APPROVED
        assert ledger.transactions[tx_id].submitted_at == NOW
        assert ledger.transactions[tx_id].submitted_at.tzinfo is None

    def test_naive_timestamps_pass_through(self):
        assert to_naive_utc(NOW) is NOW
        assert to_naive_utc(datetime(2026, 3, 10, 9, 0, tzinfo=timezone(timedelta(hours=-5)))) == NOW

    @pytest.mark.asyncio
    async def test_identity_store_failure(self, orchestrator, identity):
        async def broken(account_id):
            raise RuntimeError("identity down")

        identity.get_account = broken

        with pytest.raises(CollaboratorError):
            await submit_low(orchestrator)


class TestOtp:
    @pytest.mark.asyncio
    async def test_correct_code_approves(self, orchestrator, ledger, notifier):
        tx_id = await submit_medium(orchestrator)

        assert await orchestrator.confirm(tx_id) == ProcessState.VERIFICATION_OTP
        [otp] = notifier.of_type(NotificationType.TRANSACTION_OTP)
        assert otp["otp_code"] == "123456"

        assert await orchestrator.submit_otp(tx_id, "123456") == ProcessState.APPROVED
        assert ledger.transactions[tx_id].status == TransactionStatus.APPROVED

    @pytest.mark.asyncio
    async def test_wrong_code_blocks_transaction_and_account(self, orchestrator, ledger, identity, notifier):
        tx_id = await submit_medium(orchestrator)
        await orchestrator.confirm(tx_id)

        assert await orchestrator.submit_otp(tx_id, "654321") == ProcessState.BLOCKED

        assert ledger.transactions[tx_id].status == TransactionStatus.BLOCKED_BY_USER
        assert identity.accounts["acc-1"].status == AccountStatus.BLOCKED
        assert len(notifier.of_type(NotificationType.ACCOUNT_BLOCKED)) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("code", ["١٢٣٤٥٦", "१२३४५६", "12345\u00e9"])
    async def test_non_ascii_code_counts_as_mismatch(self, orchestrator, ledger, identity, code):
        tx_id = await submit_medium(orchestrator)
        await orchestrator.confirm(tx_id)

        assert await orchestrator.submit_otp(tx_id, code) == ProcessState.BLOCKED

        assert ledger.transactions[tx_id].status == TransactionStatus.BLOCKED_BY_USER
        assert identity.accounts["acc-1"].status == AccountStatus.BLOCKED

    @pytest.mark.asyncio
    async def test_otp_delivery_failure(self, orchestrator, ledger, notifier):
        tx_id = await submit_medium(orchestrator)
        notifier.fail = True

        with pytest.raises(CollaboratorError):
            await orchestrator.confirm(tx_id)

        assert orchestrator.get_workflow(tx_id).state == ProcessState.ERROR
        assert ledger.transactions[tx_id].status == TransactionStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_otp_outside_otp_state(self, orchestrator):
        tx_id = await submit_medium(orchestrator)

        with pytest.raises(InvalidTransitionError):
            await orchestrator.submit_otp(tx_id, "123456")
        assert orchestrator.get_workflow(tx_id).state == ProcessState.AWAITING_USER_ACTION

    def test_generated_codes_are_six_digits(self):
        code = generate_otp()

        assert len(code) == 6
        assert code.isdigit()


class TestDeny:
    @pytest.mark.asyncio
    async def test_deny_and_block(self, orchestrator, ledger, identity):
        tx_id = await submit_medium(orchestrator)

        assert await orchestrator.deny(tx_id, block=True) == ProcessState.BLOCKED

        assert ledger.transactions[tx_id].status == TransactionStatus.BLOCKED_BY_USER
        assert identity.accounts["acc-1"].status == AccountStatus.BLOCKED

    @pytest.mark.asyncio
    async def test_deny_and_flag_only(self, orchestrator, ledger, identity):
        tx_id = await submit_medium(orchestrator)

        assert await orchestrator.deny(tx_id, block=False) == ProcessState.BLOCKED

        assert ledger.transactions[tx_id].status == TransactionStatus.FLAGGED_BY_USER
        assert identity.accounts["acc-1"].status == AccountStatus.ACTIVE
        assert identity.status_updates == []


class TestBiometric:
    @pytest.mark.asyncio
    async def test_confirm_routes_high_risk_to_biometric(self, orchestrator):
        tx_id = await submit_high(orchestrator)

        assert await orchestrator.confirm(tx_id) == ProcessState.VERIFICATION_BIOMETRIC

    @pytest.mark.asyncio
    async def test_matching_sample_approves(self, orchestrator, ledger):
        tx_id = await submit_high(orchestrator)
        await orchestrator.confirm(tx_id)

        assert await orchestrator.verify_biometric_sample(tx_id, ramp_sample()) == ProcessState.APPROVED
        assert ledger.transactions[tx_id].status == TransactionStatus.APPROVED
        assert "Match" in orchestrator.get_workflow(tx_id).reason

    @pytest.mark.asyncio
    async def test_black_frame_blocks_and_opens_incident(self, orchestrator, ledger, identity):
        tx_id = await submit_high(orchestrator)
        await orchestrator.confirm(tx_id)

        assert await orchestrator.verify_biometric_sample(tx_id, dark_sample()) == ProcessState.BLOCKED

        assert ledger.transactions[tx_id].status == TransactionStatus.BLOCKED_BY_AI
        assert identity.accounts["acc-1"].status == AccountStatus.BLOCKED
        [incident] = ledger.incidents
        assert incident.transaction_id == tx_id
        assert incident.captured_sample == dark_sample()

    @pytest.mark.asyncio
    async def test_external_result_no_match(self, orchestrator, ledger):
        tx_id = await submit_high(orchestrator)
        await orchestrator.confirm(tx_id)

        state = await orchestrator.submit_biometric_result(tx_id, False, "face did not match", b"\x01\x02")

        assert state == ProcessState.BLOCKED
        assert ledger.transactions[tx_id].status == TransactionStatus.BLOCKED_BY_AI
        assert ledger.incidents[0].captured_sample == b"\x01\x02"
        assert orchestrator.get_workflow(tx_id).reason == "face did not match"

    @pytest.mark.asyncio
    async def test_external_result_match(self, orchestrator):
        tx_id = await submit_high(orchestrator)
        await orchestrator.confirm(tx_id)

        assert await orchestrator.submit_biometric_result(tx_id, True, "ok") == ProcessState.APPROVED


class TestCancelAndReset:
    @pytest.mark.asyncio
    async def test_cancel_pending(self, orchestrator, ledger):
        tx_id = await submit_medium(orchestrator)

        assert await orchestrator.cancel(tx_id) == ProcessState.CANCELLED
        assert ledger.transactions[tx_id].status == TransactionStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_before_scoring_writes_nothing(self, orchestrator, ledger):
        tx_id = await orchestrator.submit_transaction("acc-1", "alice@upi", 15_000, TransactionCategory.UPI)

        assert await orchestrator.cancel(tx_id) == ProcessState.CANCELLED
        assert tx_id not in ledger.transactions

    @pytest.mark.asyncio
    async def test_terminal_states_ignore_actions(self, orchestrator, ledger):
        tx_id = await submit_low(orchestrator)

        for action in (orchestrator.confirm, orchestrator.cancel):
            with pytest.raises(InvalidTransitionError):
                await action(tx_id)
        with pytest.raises(InvalidTransitionError):
            await orchestrator.deny(tx_id, block=True)

        assert orchestrator.get_workflow(tx_id).state == ProcessState.APPROVED
        assert ledger.transactions[tx_id].status == TransactionStatus.APPROVED

    @pytest.mark.asyncio
    async def test_reset_returns_to_idle_and_releases(self, orchestrator):
        tx_id = await submit_low(orchestrator)
        workflow = orchestrator.get_workflow(tx_id)

        await orchestrator.reset(tx_id)

        assert workflow.state == ProcessState.IDLE
        assert workflow.proposal is None and workflow.otp_code is None
        with pytest.raises(UnknownTransactionError):
            orchestrator.get_workflow(tx_id)

    @pytest.mark.asyncio
    async def test_terminal_workflow_stays_registered_until_reset(self, orchestrator):
        tx_id = await submit_low(orchestrator)

        assert [w.transaction_id for w in orchestrator.active_workflows] == [tx_id]

        await orchestrator.reset(tx_id)

        assert orchestrator.active_workflows == []

    @pytest.mark.asyncio
    async def test_reset_requires_terminal_state(self, orchestrator):
        tx_id = await submit_medium(orchestrator)

        with pytest.raises(InvalidTransitionError):
            await orchestrator.reset(tx_id)

    @pytest.mark.asyncio
    async def test_scheduled_reset(self, orchestrator):
        tx_id = await submit_low(orchestrator)

        await orchestrator.schedule_reset(tx_id, delay=0.01)

        assert orchestrator.active_workflows == []

    def test_snapshot_hides_otp(self):
        workflow = VerificationWorkflow("tx-1", None)
        workflow.otp_code = "123456"

        assert "123456" not in str(workflow.snapshot())
        assert workflow.snapshot()["state"] == "IDLE"


class TestAccountSerialization:
    @pytest.mark.asyncio
    async def test_block_wins_over_later_approval(self, orchestrator, ledger, identity):
        first = await submit_medium(orchestrator, "bob@upi")
        second = await submit_medium(orchestrator, "carol@upi")
        await orchestrator.confirm(first)
        await orchestrator.confirm(second)

        await orchestrator.submit_otp(first, "000000")
        state = await orchestrator.submit_otp(second, "123456")

        assert state == ProcessState.CANCELLED
        assert ledger.transactions[second].status == TransactionStatus.CANCELLED
        assert identity.accounts["acc-1"].status == AccountStatus.BLOCKED

    @pytest.mark.asyncio
    async def test_concurrent_outcomes_are_consistent(self, orchestrator, ledger, identity):
        first = await submit_medium(orchestrator, "bob@upi")
        second = await submit_medium(orchestrator, "carol@upi")
        await orchestrator.confirm(first)
        await orchestrator.confirm(second)

        states = await asyncio.gather(
            orchestrator.submit_otp(first, "000000"),
            orchestrator.submit_otp(second, "123456"),
        )

        assert states[0] == ProcessState.BLOCKED
        assert states[1] in (ProcessState.APPROVED, ProcessState.CANCELLED)
        assert identity.accounts["acc-1"].status == AccountStatus.BLOCKED
        # el bloqueo de cuenta se registra una sola vez
        assert identity.status_updates == [("acc-1", AccountStatus.BLOCKED)]

    @pytest.mark.asyncio
    async def test_new_submission_after_block_is_rejected(self, orchestrator):
        tx_id = await submit_medium(orchestrator)
        await orchestrator.deny(tx_id, block=True)

        with pytest.raises(AccountBlockedError):
            await submit_low(orchestrator)

    @pytest.mark.asyncio
    async def test_approved_transaction_counts_toward_velocity(self, orchestrator, ledger):
        await orchestrator.submit_transaction(
            "acc-1", "alice@upi", 9_000, TransactionCategory.UPI,
            location_status=LocationStatus.SUCCESS, place_name=BENGALURU,
        )

        totals = await ledger.get_velocity_totals("acc-1", TransactionCategory.UPI, NOW + timedelta(minutes=1))

        assert totals.daily_total == 9_000


class TestTerminalWriteFailures:
    """Un fallo al registrar el desenlace nunca deja la transaccion a medias."""

    @pytest.mark.asyncio
    async def test_incident_failure_cancels_transaction(self, orchestrator, ledger, identity):
        tx_id = await submit_high(orchestrator)
        await orchestrator.confirm(tx_id)
        ledger.fail_on.add("create_incident")

        with pytest.raises(CollaboratorError):
            await orchestrator.verify_biometric_sample(tx_id, dark_sample())

        assert orchestrator.get_workflow(tx_id).state == ProcessState.ERROR
        assert ledger.transactions[tx_id].status == TransactionStatus.CANCELLED
        assert ledger.incidents == []
        # el bloqueo de cuenta se aplica antes que el resto
        assert identity.accounts["acc-1"].status == AccountStatus.BLOCKED

    @pytest.mark.asyncio
    async def test_account_block_failure_cancels_transaction(self, orchestrator, ledger, identity):
        tx_id = await submit_high(orchestrator)
        await orchestrator.confirm(tx_id)

        async def broken(account_id, status):
            raise RuntimeError("identity down")

        identity.update_account_status = broken

        with pytest.raises(CollaboratorError):
            await orchestrator.submit_biometric_result(tx_id, False, "no match", b"\x01")

        assert orchestrator.get_workflow(tx_id).state == ProcessState.ERROR
        assert ledger.transactions[tx_id].status == TransactionStatus.CANCELLED
        assert ledger.incidents == []
        assert identity.accounts["acc-1"].status == AccountStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_status_write_failure_on_block(self, orchestrator, ledger, identity):
        tx_id = await submit_medium(orchestrator)
        ledger.fail_once.add("update_transaction_status")

        with pytest.raises(CollaboratorError):
            await orchestrator.deny(tx_id, block=True)

        assert orchestrator.get_workflow(tx_id).state == ProcessState.ERROR
        assert ledger.transactions[tx_id].status == TransactionStatus.CANCELLED
        assert identity.accounts["acc-1"].status == AccountStatus.BLOCKED

    @pytest.mark.asyncio
    async def test_status_write_failure_on_approve(self, orchestrator, ledger, identity):
        tx_id = await submit_medium(orchestrator)
        await orchestrator.confirm(tx_id)
        ledger.fail_once.add("update_transaction_status")

        with pytest.raises(CollaboratorError) as exc:
            await orchestrator.submit_otp(tx_id, "123456")

        assert exc.value.transaction_id == tx_id
        assert orchestrator.get_workflow(tx_id).state == ProcessState.ERROR
        assert ledger.transactions[tx_id].status == TransactionStatus.CANCELLED
        assert identity.accounts["acc-1"].status == AccountStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_persist_failure_writes_nothing(self, orchestrator, ledger):
        ledger.fail_on.add("persist_transaction")
        before = dict(ledger.transactions)

        with pytest.raises(CollaboratorError) as exc:
            await submit_medium(orchestrator)

        assert orchestrator.get_workflow(exc.value.transaction_id).state == ProcessState.ERROR
        assert ledger.transactions == before
