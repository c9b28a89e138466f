# app/domain/services/verification_flow.py
import asyncio
import logging
import secrets
import string
import uuid
from collections import defaultdict
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, List, NoReturn, Optional, Set

from app.core.config import settings
from app.core.exceptions import (
    AccountBlockedError,
    CollaboratorError,
    InvalidTransitionError,
    UnknownTransactionError,
    ValidationError,
)
from app.domain.entities.risk import (
    Account,
    AccountStatus,
    LocationStatus,
    NotificationType,
    ProposedTransaction,
    RecordedTransaction,
    RiskAssessment,
    RiskTier,
    TransactionCategory,
    TransactionStatus,
    VelocityTotals,
)
from app.domain.services.collaborators import IdentityStore, Ledger, Notifier
from app.domain.services.profile_service import build_profile, typical_locations
from app.domain.services.velocity_service import check_velocity_limits
from app.domain.services.verification_policy import (
    VerificationPath,
    VerificationRequirement,
    required_verification,
    requires_pre_confirmation,
)
from app.infra.detectors.biometric import verify_biometric
from app.infra.detectors.risk_model import score_transaction
from app.infra.detectors.similarity import SimilarityProvider, SimulatedSimilarityProvider

logger = logging.getLogger(__name__)


class ProcessState(str, Enum):
    IDLE = "IDLE"
    AWAITING_PRE_CONFIRMATION = "AWAITING_PRE_CONFIRMATION"
    ANALYZING = "ANALYZING"
    AWAITING_USER_ACTION = "AWAITING_USER_ACTION"
    VERIFICATION_OTP = "VERIFICATION_OTP"
    VERIFICATION_BIOMETRIC = "VERIFICATION_BIOMETRIC"
    APPROVED = "APPROVED"
    BLOCKED = "BLOCKED"
    CANCELLED = "CANCELLED"
    ERROR = "ERROR"


TERMINAL_STATES = frozenset({ProcessState.APPROVED, ProcessState.BLOCKED, ProcessState.CANCELLED, ProcessState.ERROR})

# Estados en los que el usuario puede abandonar la transaccion
CANCELLABLE_STATES = frozenset({
    ProcessState.AWAITING_PRE_CONFIRMATION,
    ProcessState.AWAITING_USER_ACTION,
    ProcessState.VERIFICATION_OTP,
    ProcessState.VERIFICATION_BIOMETRIC,
})

TRANSITIONS: Dict[ProcessState, Set[ProcessState]] = {
    ProcessState.IDLE: {ProcessState.AWAITING_PRE_CONFIRMATION, ProcessState.ANALYZING},
    ProcessState.AWAITING_PRE_CONFIRMATION: {ProcessState.ANALYZING, ProcessState.CANCELLED, ProcessState.ERROR},
    ProcessState.ANALYZING: {
        ProcessState.APPROVED,
        ProcessState.AWAITING_USER_ACTION,
        ProcessState.CANCELLED,
        ProcessState.ERROR,
    },
    ProcessState.AWAITING_USER_ACTION: {
        ProcessState.VERIFICATION_OTP,
        ProcessState.VERIFICATION_BIOMETRIC,
        ProcessState.BLOCKED,
        ProcessState.CANCELLED,
        ProcessState.ERROR,
    },
    ProcessState.VERIFICATION_OTP: {
        ProcessState.APPROVED,
        ProcessState.BLOCKED,
        ProcessState.CANCELLED,
        ProcessState.ERROR,
    },
    ProcessState.VERIFICATION_BIOMETRIC: {
        ProcessState.APPROVED,
        ProcessState.BLOCKED,
        ProcessState.CANCELLED,
        ProcessState.ERROR,
    },
    ProcessState.APPROVED: {ProcessState.IDLE},
    ProcessState.BLOCKED: {ProcessState.IDLE},
    ProcessState.CANCELLED: {ProcessState.IDLE},
    ProcessState.ERROR: {ProcessState.IDLE},
}


def generate_otp(length: int | None = None) -> str:
    return "".join(secrets.choice(string.digits) for _ in range(length or settings.OTP_LENGTH))


def to_naive_utc(value: datetime) -> datetime:
    """El ledger guarda UTC sin zona; los instantes con zona se convierten."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def validate_submission(proposal: ProposedTransaction, account: Optional[Account] = None) -> None:
    """Precondiciones para salir de IDLE. Lanza ValidationError / AccountBlockedError."""
    if proposal.amount is None or proposal.amount <= 0:
        raise ValidationError("Amount must be greater than zero.", details={"amount": proposal.amount})
    if not (proposal.recipient or "").strip():
        raise ValidationError("Recipient must not be empty.")
    if account is not None and account.status == AccountStatus.BLOCKED:
        raise AccountBlockedError(account.id)


class VerificationWorkflow:
    """
    Maquina de estados de UNA transaccion. Cada instancia es independiente y
    serializa sus propias operaciones con un asyncio.Lock.
    """

    def __init__(
        self,
        transaction_id: str,
        proposal: ProposedTransaction,
        location_status: Optional[LocationStatus] = None,
    ):
        self.transaction_id = transaction_id
        self.proposal: Optional[ProposedTransaction] = proposal
        self.location_status = location_status
        self.state = ProcessState.IDLE
        self.velocity: Optional[VelocityTotals] = None
        self.assessment: Optional[RiskAssessment] = None
        self.requirement: Optional[VerificationRequirement] = None
        self.record: Optional[RecordedTransaction] = None
        self.otp_code: Optional[str] = None
        self.reason: Optional[str] = None
        self.error: Optional[str] = None
        self.transitions: List[tuple[ProcessState, ProcessState]] = []
        self.lock = asyncio.Lock()

    # ------------------------------------------------------------------
    def can(self, target: ProcessState) -> bool:
        return target in TRANSITIONS[self.state]

    def transition(self, target: ProcessState, action: str) -> None:
        if not self.can(target):
            raise InvalidTransitionError(self.transaction_id, self.state.value, action)
        logger.info(f"tx={self.transaction_id} {self.state.value} -> {target.value} ({action})")
        self.transitions.append((self.state, target))
        self.state = target

    def require(self, action: str, *states: ProcessState) -> None:
        if self.state not in states:
            raise InvalidTransitionError(self.transaction_id, self.state.value, action)

    # ------------------------------------------------------------------
    def begin(
        self,
        account: Account,
        velocity: VelocityTotals,
        high_value_confirmed: bool = False,
    ) -> ProcessState:
        """
        IDLE -> ANALYZING (o AWAITING_PRE_CONFIRMATION para montos altos).
        Entradas invalidas, cuentas bloqueadas o cupos excedidos dejan el
        estado en IDLE y lanzan la excepcion correspondiente.
        """
        self.require("submit", ProcessState.IDLE)
        validate_submission(self.proposal, account)
        check_velocity_limits(self.proposal.category, self.proposal.amount, velocity)

        self.velocity = velocity
        if requires_pre_confirmation(self.proposal.amount) and not high_value_confirmed:
            self.transition(ProcessState.AWAITING_PRE_CONFIRMATION, "submit")
        else:
            self.transition(ProcessState.ANALYZING, "submit")
        return self.state

    def clear(self) -> None:
        """Limpia los campos locales del flujo; no toca lo persistido."""
        self.proposal = None
        self.velocity = None
        self.assessment = None
        self.requirement = None
        self.record = None
        self.otp_code = None
        self.reason = None
        self.error = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def snapshot(self) -> dict:
        return {
            "transaction_id": self.transaction_id,
            "state": self.state.value,
            "risk_score": self.assessment.score if self.assessment else None,
            "risk_tier": self.assessment.tier.value if self.assessment else None,
            "rationale": list(self.assessment.rationale) if self.assessment else [],
            "verification_path": self.requirement.path.value if self.requirement else None,
            "transaction_status": self.record.status.value if self.record else None,
            "reason": self.reason,
            "error": self.error,
        }


class VerificationOrchestrator:
    """
    Conduce cada transaccion desde el envio hasta su estado terminal usando
    los colaboradores inyectados (Ledger, IdentityStore, Notifier).
    Las mutaciones del estado de la cuenta se serializan por cuenta.
    """

    def __init__(
        self,
        ledger: Ledger,
        identity: IdentityStore,
        notifier: Notifier,
        provider: Optional[SimilarityProvider] = None,
        otp_factory: Callable[[], str] = generate_otp,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.ledger = ledger
        self.identity = identity
        self.notifier = notifier
        self.provider = provider or SimulatedSimilarityProvider()
        self.otp_factory = otp_factory
        self.clock = clock
        self._workflows: Dict[str, VerificationWorkflow] = {}
        self._account_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._reset_tasks: Set[asyncio.Task] = set()

    # ==========================================================
    #  CONSULTAS
    # ==========================================================

    def get_workflow(self, transaction_id: str) -> VerificationWorkflow:
        workflow = self._workflows.get(transaction_id)
        if workflow is None:
            raise UnknownTransactionError(transaction_id)
        return workflow

    @property
    def active_workflows(self) -> List[VerificationWorkflow]:
        return list(self._workflows.values())

    # ==========================================================
    #  ENVIO Y ANALISIS
    # ==========================================================

    async def submit_transaction(
        self,
        account_id: str,
        recipient: str,
        amount: float,
        category: TransactionCategory,
        *,
        submitted_at: Optional[datetime] = None,
        location_status: Optional[LocationStatus] = None,
        place_name: Optional[str] = None,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
        high_value_confirmed: bool = False,
    ) -> str:
        proposal = ProposedTransaction(
            account_id=account_id,
            recipient=(recipient or "").strip(),
            amount=amount,
            category=TransactionCategory(category),
            submitted_at=to_naive_utc(submitted_at or self.clock()),
            latitude=latitude,
            longitude=longitude,
            place_name=place_name,
        )
        # Validacion sincronica antes de tocar cualquier colaborador
        validate_submission(proposal)

        try:
            account = await self.identity.get_account(account_id)
        except Exception as e:
            logger.error(f"❌ Identity store no disponible (cuenta={account_id}): {e}")
            raise CollaboratorError(f"Identity store unavailable: {e}") from e
        if account is None:
            raise ValidationError(f"Unknown account {account_id}.", details={"account_id": account_id})

        validate_submission(proposal, account)

        try:
            velocity = await self.ledger.get_velocity_totals(account_id, proposal.category, proposal.submitted_at)
        except Exception as e:
            logger.error(f"❌ Ledger no disponible (cuenta={account_id}): {e}")
            raise CollaboratorError(f"Ledger unavailable: {e}") from e

        workflow = VerificationWorkflow(str(uuid.uuid4()), proposal, location_status)
        workflow.begin(account, velocity, high_value_confirmed)
        self._workflows[workflow.transaction_id] = workflow

        if workflow.state == ProcessState.AWAITING_PRE_CONFIRMATION:
            logger.info(f"tx={workflow.transaction_id} requiere confirmacion de monto alto ({amount})")
            return workflow.transaction_id

        async with workflow.lock:
            await self._analyze(workflow, account)
        return workflow.transaction_id

    async def confirm_high_value(self, transaction_id: str) -> ProcessState:
        workflow = self.get_workflow(transaction_id)
        async with workflow.lock:
            workflow.require("confirm high-value", ProcessState.AWAITING_PRE_CONFIRMATION)
            try:
                account = await self.identity.get_account(workflow.proposal.account_id)
            except Exception as e:
                await self._fail(workflow, f"Identity store unavailable: {e}")
            if account is None or account.status == AccountStatus.BLOCKED:
                await self._cancel(workflow, "Account was blocked before the transaction was analyzed.")
                return workflow.state
            workflow.transition(ProcessState.ANALYZING, "confirm high-value")
            await self._analyze(workflow, account)
            return workflow.state

    async def _analyze(self, workflow: VerificationWorkflow, account: Account) -> None:
        proposal = workflow.proposal
        try:
            history = await self.ledger.get_history(proposal.account_id)
            assessment = score_transaction(
                proposal,
                account,
                history,
                workflow.velocity,
                workflow.location_status,
                typical_locations(history),
                profile=build_profile(history),
            )
        except Exception as e:
            await self._fail(workflow, f"Risk analysis failed: {e}")

        workflow.assessment = assessment
        workflow.requirement = required_verification(assessment.tier, proposal.amount)
        low = assessment.tier == RiskTier.LOW

        record = RecordedTransaction(
            id=workflow.transaction_id,
            account_id=proposal.account_id,
            recipient=proposal.recipient,
            amount=proposal.amount,
            category=proposal.category,
            submitted_at=proposal.submitted_at,
            risk_score=assessment.score,
            risk_tier=assessment.tier,
            rationale=list(assessment.rationale),
            status=TransactionStatus.APPROVED if low else TransactionStatus.PENDING,
            latitude=proposal.latitude,
            longitude=proposal.longitude,
            place_name=proposal.place_name,
        )

        if low:
            async with self._account_locks[proposal.account_id]:
                if not await self._account_still_open(workflow):
                    return
                try:
                    await self.ledger.persist_transaction(record)
                except Exception as e:
                    await self._fail(workflow, f"Could not record transaction: {e}")
                workflow.record = record
                workflow.reason = "Low risk: approved automatically."
                workflow.transition(ProcessState.APPROVED, "auto-approve")
            return

        try:
            await self.ledger.persist_transaction(record)
        except Exception as e:
            await self._fail(workflow, f"Could not record transaction: {e}")
        workflow.record = record
        workflow.transition(ProcessState.AWAITING_USER_ACTION, "analyze")

        if assessment.tier in (RiskTier.HIGH, RiskTier.CRITICAL):
            await self._notify_quietly(
                proposal.account_id,
                f"A high-risk transaction of {proposal.amount:,.2f} to {proposal.recipient} requires your attention.",
                type=NotificationType.HIGH_RISK_TRANSACTION,
                transaction_id=workflow.transaction_id,
            )

    # ==========================================================
    #  ACCIONES DEL TITULAR
    # ==========================================================

    async def confirm(self, transaction_id: str) -> ProcessState:
        workflow = self.get_workflow(transaction_id)
        async with workflow.lock:
            workflow.require("confirm", ProcessState.AWAITING_USER_ACTION)
            if workflow.requirement.path == VerificationPath.OTP:
                workflow.transition(ProcessState.VERIFICATION_OTP, "confirm")
                workflow.otp_code = self.otp_factory()
                proposal = workflow.proposal
                try:
                    await self.notifier.notify(
                        proposal.account_id,
                        f"Your OTP for the transaction of {proposal.amount:,.2f} to "
                        f"{proposal.recipient} is {workflow.otp_code}.",
                        type=NotificationType.TRANSACTION_OTP,
                        transaction_id=transaction_id,
                        otp_code=workflow.otp_code,
                    )
                except Exception as e:
                    await self._fail(workflow, f"Could not deliver one-time code: {e}")
            else:
                workflow.transition(ProcessState.VERIFICATION_BIOMETRIC, "confirm")
            return workflow.state

    async def deny(self, transaction_id: str, block: bool) -> ProcessState:
        workflow = self.get_workflow(transaction_id)
        async with workflow.lock:
            workflow.require("deny", ProcessState.AWAITING_USER_ACTION)
            if block:
                await self._block(
                    workflow,
                    TransactionStatus.BLOCKED_BY_USER,
                    "Account holder rejected the transaction and blocked the account.",
                    cascade=True,
                )
            else:
                await self._block(
                    workflow,
                    TransactionStatus.FLAGGED_BY_USER,
                    "Account holder did not recognize the transaction and flagged it.",
                    cascade=False,
                )
            return workflow.state

    async def submit_otp(self, transaction_id: str, code: str) -> ProcessState:
        workflow = self.get_workflow(transaction_id)
        async with workflow.lock:
            workflow.require("submit OTP for", ProcessState.VERIFICATION_OTP)
            # Se comparan bytes: compare_digest rechaza str con caracteres no ASCII
            supplied = str(code or "").encode("utf-8")
            if secrets.compare_digest(supplied, (workflow.otp_code or "").encode("utf-8")):
                await self._approve(workflow, "One-time code verified.")
            else:
                await self._block(
                    workflow,
                    TransactionStatus.BLOCKED_BY_USER,
                    "Incorrect one-time code; transaction blocked and account locked.",
                    cascade=True,
                )
            return workflow.state

    async def submit_biometric_result(
        self,
        transaction_id: str,
        match: bool,
        reason: str,
        captured_sample: bytes = b"",
    ) -> ProcessState:
        workflow = self.get_workflow(transaction_id)
        async with workflow.lock:
            workflow.require("submit biometric result for", ProcessState.VERIFICATION_BIOMETRIC)
            await self._resolve_biometric(workflow, match, reason, captured_sample)
            return workflow.state

    async def verify_biometric_sample(self, transaction_id: str, live_sample: bytes) -> ProcessState:
        """Corre el verificador biometrico (bloqueante, en thread) y resuelve el flujo."""
        workflow = self.get_workflow(transaction_id)
        async with workflow.lock:
            workflow.require("verify biometrics for", ProcessState.VERIFICATION_BIOMETRIC)
            try:
                account = await self.identity.get_account(workflow.proposal.account_id)
                result = await asyncio.to_thread(
                    verify_biometric,
                    live_sample,
                    account.reference_vectors,
                    account,
                    workflow.record,
                    provider=self.provider,
                    now=self.clock(),
                )
            except Exception as e:
                await self._fail(workflow, f"Biometric verification unavailable: {e}")
            await self._resolve_biometric(workflow, result.match, result.reason, live_sample)
            return workflow.state

    async def cancel(self, transaction_id: str) -> ProcessState:
        workflow = self.get_workflow(transaction_id)
        async with workflow.lock:
            workflow.require("cancel", *CANCELLABLE_STATES)
            await self._cancel(workflow, "Transaction abandoned by the account holder.")
            return workflow.state

    # ==========================================================
    #  RESET
    # ==========================================================

    async def reset(self, transaction_id: str, delay: float = 0.0) -> None:
        """
        Estado terminal -> IDLE tras `delay` segundos; libera el flujo.

        Los flujos terminales quedan registrados (consultables) hasta este
        reset. Quien use el orquestador directamente debe llamarlo, o
        `schedule_reset`, para no acumular flujos terminados.
        """
        if delay:
            await asyncio.sleep(delay)
        workflow = self.get_workflow(transaction_id)
        async with workflow.lock:
            workflow.require("reset", *TERMINAL_STATES)
            workflow.transition(ProcessState.IDLE, "reset")
            workflow.clear()
            self._workflows.pop(transaction_id, None)

    def schedule_reset(self, transaction_id: str, delay: float | None = None) -> asyncio.Task:
        delay = settings.RESET_DELAY_SECONDS if delay is None else delay
        task = asyncio.create_task(self.reset(transaction_id, delay))
        self._reset_tasks.add(task)
        task.add_done_callback(self._on_reset_done)
        return task

    def _on_reset_done(self, task: asyncio.Task) -> None:
        self._reset_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning(f"Reset programado fallo: {task.exception()}")

    # ==========================================================
    #  TRANSICIONES TERMINALES
    # ==========================================================

    async def _resolve_biometric(
        self,
        workflow: VerificationWorkflow,
        match: bool,
        reason: str,
        captured_sample: bytes,
    ) -> None:
        if match:
            await self._approve(workflow, reason or "Biometric verification passed.")
        else:
            await self._block(
                workflow,
                TransactionStatus.BLOCKED_BY_AI,
                reason or "Biometric verification failed.",
                cascade=True,
                incident_sample=captured_sample or b"",
            )

    async def _account_still_open(self, workflow: VerificationWorkflow) -> bool:
        """Debe llamarse con el lock de la cuenta tomado."""
        account_id = workflow.proposal.account_id
        try:
            account = await self.identity.get_account(account_id)
        except Exception as e:
            await self._fail(workflow, f"Identity store unavailable: {e}")
        if account is not None and account.status != AccountStatus.BLOCKED:
            return True
        await self._cancel(workflow, "Account was blocked while this transaction was in flight.")
        return False

    async def _approve(self, workflow: VerificationWorkflow, reason: str) -> None:
        async with self._account_locks[workflow.proposal.account_id]:
            if not await self._account_still_open(workflow):
                return
            try:
                await self.ledger.update_transaction_status(workflow.transaction_id, TransactionStatus.APPROVED)
            except Exception as e:
                await self._fail(workflow, f"Could not update transaction status: {e}")
            workflow.record.status = TransactionStatus.APPROVED
            workflow.reason = reason
            workflow.transition(ProcessState.APPROVED, "approve")

    async def _block(
        self,
        workflow: VerificationWorkflow,
        status: TransactionStatus,
        reason: str,
        cascade: bool,
        incident_sample: Optional[bytes] = None,
    ) -> None:
        account_id = workflow.proposal.account_id
        async with self._account_locks[account_id]:
            # Estado final de la transaccion al ultimo: si algo falla antes sigue
            # PENDING y _fail la cancela. El bloqueo de cuenta va primero.
            try:
                if cascade:
                    await self._block_account(account_id)
                if incident_sample is not None:
                    incident = await self.ledger.create_incident(account_id, incident_sample, workflow.transaction_id)
                    logger.warning(f"🚨 Incidente {incident.id} abierto para cuenta={account_id}")
                await self.ledger.update_transaction_status(workflow.transaction_id, status)
                workflow.record.status = status
            except Exception as e:
                await self._fail(workflow, f"Could not record blocked outcome: {e}")
            workflow.reason = reason
            workflow.transition(ProcessState.BLOCKED, status.value.lower())

    async def _block_account(self, account_id: str) -> None:
        account = await self.identity.get_account(account_id)
        if account is not None and account.status == AccountStatus.BLOCKED:
            return
        await self.identity.update_account_status(account_id, AccountStatus.BLOCKED)
        logger.warning(f"⛔ Cuenta {account_id} bloqueada por el flujo de verificacion")
        await self._notify_quietly(
            account_id,
            "Your account has been blocked for security reasons.",
            type=NotificationType.ACCOUNT_BLOCKED,
        )

    async def _cancel(self, workflow: VerificationWorkflow, reason: str) -> None:
        if workflow.record is not None:
            try:
                await self.ledger.update_transaction_status(workflow.transaction_id, TransactionStatus.CANCELLED)
                workflow.record.status = TransactionStatus.CANCELLED
            except Exception as e:
                await self._fail(workflow, f"Could not cancel transaction: {e}")
        workflow.reason = reason
        workflow.transition(ProcessState.CANCELLED, "cancel")

    async def _fail(self, workflow: VerificationWorkflow, message: str) -> NoReturn:
        """
        Pasa el flujo a ERROR y lanza CollaboratorError. Si la transaccion ya
        estaba registrada como PENDING se marca CANCELLED para no dejarla ambigua.
        """
        logger.error(f"❌ tx={workflow.transaction_id}: {message}")
        if workflow.record is not None and workflow.record.status == TransactionStatus.PENDING:
            try:
                await self.ledger.update_transaction_status(workflow.transaction_id, TransactionStatus.CANCELLED)
                workflow.record.status = TransactionStatus.CANCELLED
            except Exception as e:
                logger.error(f"❌ tx={workflow.transaction_id}: no se pudo cancelar tras el error: {e}")
        workflow.error = message
        if workflow.can(ProcessState.ERROR):
            workflow.transition(ProcessState.ERROR, "fail")
        raise CollaboratorError(message, transaction_id=workflow.transaction_id)

    async def _notify_quietly(self, account_id: str, message: str, **kwargs) -> None:
        # Las alertas informativas no deben tumbar el flujo
        try:
            await self.notifier.notify(account_id, message, **kwargs)
        except Exception as e:
            logger.warning(f"⚠️ No se pudo notificar a la cuenta {account_id}: {e}")
