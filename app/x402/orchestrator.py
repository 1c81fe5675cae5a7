# app/x402/orchestrator.py
"""
Settlement orchestrator: serve first, settle after.

Each paid request runs through a small state machine:

    HOLD -> EXECUTE -> VALIDATE -> SETTLE
      \         \          \
       +---------+----------+--> VOID

HOLD      decode and verify the authorization, burn its nonce, and check
          that the executor can pay gas (and the payer can pay the amount)
EXECUTE   call the downstream service once, forwarding X-PAYMENT as proof
VALIDATE  apply the resource's result policy to the service response
SETTLE    submit transferWithAuthorization and wait for the receipt
VOID      terminal failure; no value moves

The payer's funds only move after a result has been observed and
accepted. The price of that ordering is a narrow window where the chain
rejects (or does not confirm) a settlement for a result that was already
delivered; those attempts are flagged for reconciliation, never dropped.
"""
import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from starlette.concurrency import run_in_threadpool
from x402.types import PaymentRequirements

from app.core.config import ResourceConfig, settings
from app.services.chain import ChainClient, ChainError, ConfirmationTimeout, SettlementSigner
from app.services.upstream import HttpServiceInvoker, ServiceResponse, ServiceUnreachableError, resolve_upstream
from app.x402 import audit
from app.x402.balance import BalanceOracle
from app.x402.codec import Authorization, PaymentEnvelope, decode_payment_header, envelope_summary
from app.x402.errors import (
    VERIFICATION_REASONS,
    PaymentError,
    Reason,
    is_retryable_with_fresh_authorization,
    reason_stage,
)
from app.x402.policy import get_policy
from app.x402.reliability import ProviderReliabilityTracker
from app.x402.replay import InMemoryReplayGuard, ReplayGuard
from app.x402.verifier import SigningDomain, check_requirement, check_validity_window, verify_signature

logger = logging.getLogger(__name__)


class AttemptState(str, Enum):
    HOLD = "HOLD"
    EXECUTE = "EXECUTE"
    VALIDATE = "VALIDATE"
    SETTLE = "SETTLE"
    VOID = "VOID"


ALLOWED_TRANSITIONS = {
    AttemptState.HOLD: frozenset({AttemptState.EXECUTE, AttemptState.VOID}),
    AttemptState.EXECUTE: frozenset({AttemptState.VALIDATE, AttemptState.VOID}),
    AttemptState.VALIDATE: frozenset({AttemptState.SETTLE, AttemptState.VOID}),
    AttemptState.SETTLE: frozenset(),
    AttemptState.VOID: frozenset(),
}


class IllegalTransition(Exception):
    """Raised when an attempt is moved along an edge the state machine lacks."""


@dataclass
class SettlementAttempt:
    """Mutable record of one request; owned by the orchestrator alone."""
    attempt_id: str
    state: AttemptState = AttemptState.HOLD
    payer: Optional[str] = None
    payee: Optional[str] = None
    amount: int = 0
    nonce: Optional[str] = None
    authorization: Optional[Authorization] = None
    timestamps: Dict[str, float] = field(default_factory=dict)
    failure_reason: Optional[Reason] = None
    failure_message: Optional[str] = None
    tx_hash: Optional[str] = None
    reconciliation: bool = False
    service_latency_ms: Optional[float] = None

    def __post_init__(self):
        self.timestamps.setdefault(self.state.value, time.time())

    @property
    def terminal(self) -> bool:
        return not ALLOWED_TRANSITIONS[self.state]

    def transition(self, new_state: AttemptState) -> None:
        if new_state not in ALLOWED_TRANSITIONS[self.state]:
            raise IllegalTransition(f"Attempt {self.attempt_id}: {self.state.value} -> {new_state.value}")
        logger.debug(f"x402: attempt {self.attempt_id} {self.state.value} -> {new_state.value}")
        self.state = new_state
        self.timestamps[new_state.value] = time.time()

    def void(self, reason: Reason, message: str) -> None:
        self.failure_reason = reason
        self.failure_message = message
        self.transition(AttemptState.VOID)

    def bind(self, authorization: Authorization) -> None:
        self.authorization = authorization
        self.payer = authorization.payer
        self.payee = authorization.payee
        self.amount = authorization.value
        self.nonce = authorization.nonce


@dataclass
class SettlementOutcome:
    """What the caller learns about an attempt."""
    paid: bool
    state: AttemptState
    attempt_id: str
    network: str
    amount: int = 0
    reason: Optional[Reason] = None
    message: Optional[str] = None
    tx_hash: Optional[str] = None
    reconciliation: bool = False
    service_response: Optional[ServiceResponse] = None

    @property
    def stage(self) -> Optional[str]:
        return reason_stage(self.reason) if self.reason else None

    def to_dict(self) -> Dict[str, Any]:
        if not self.paid:
            return {
                "paid": False,
                "reason": self.reason.value if self.reason else None,
                "message": self.message,
                "retryable": is_retryable_with_fresh_authorization(self.reason) if self.reason else False,
            }

        result: Dict[str, Any] = {
            "paid": True,
            "amount": str(self.amount),
            "txHash": self.tx_hash,
            "network": self.network,
        }
        if self.reconciliation:
            result["reconciliation"] = True
            result["reason"] = self.reason.value if self.reason else None
            result["message"] = self.message
            result["retryable"] = False
        return result


class SettlementOrchestrator:
    """
    Runs settlement attempts end to end.

    Collaborators are injected so each can be replaced independently;
    anything left as None falls back to the configured default.
    """

    def __init__(
        self,
        chain_client: ChainClient,
        signer: Optional[SettlementSigner] = None,
        invoker: Optional[HttpServiceInvoker] = None,
        replay_guard: Optional[ReplayGuard] = None,
        tracker: Optional[ProviderReliabilityTracker] = None,
        gas_oracle: Optional[BalanceOracle] = None,
        token_oracle: Optional[BalanceOracle] = None,
        domain: Optional[SigningDomain] = None,
        settlement_timeout: Optional[float] = None,
        min_executor_balance: Optional[int] = None,
        check_payer_funds: Optional[bool] = None,
        check_authorization_state: Optional[bool] = None,
        clock=time.time,
    ):
        self.chain_client = chain_client
        self.signer = signer
        self.invoker = invoker if invoker is not None else HttpServiceInvoker()
        # An empty replay guard is falsy (it defines __len__).
        self.replay_guard = replay_guard if replay_guard is not None else InMemoryReplayGuard()
        self.tracker = tracker if tracker is not None else ProviderReliabilityTracker()
        self.domain = domain if domain is not None else SigningDomain.from_settings()
        self.asset = self.domain.verifying_contract
        self.gas_oracle = gas_oracle if gas_oracle is not None else BalanceOracle(
            chain_client, asset=None, cache_ttl_seconds=settings.X402_BALANCE_CACHE_SECONDS
        )
        self.token_oracle = token_oracle if token_oracle is not None else BalanceOracle(
            chain_client, asset=self.asset, cache_ttl_seconds=settings.X402_BALANCE_CACHE_SECONDS
        )
        self.settlement_timeout = (
            settlement_timeout if settlement_timeout is not None else settings.X402_SETTLEMENT_TIMEOUT_SECONDS
        )
        self.min_executor_balance = (
            min_executor_balance if min_executor_balance is not None else settings.X402_MIN_EXECUTOR_BALANCE_WEI
        )
        self.check_payer_funds = (
            check_payer_funds if check_payer_funds is not None else settings.X402_CHECK_PAYER_FUNDS
        )
        self.check_authorization_state = (
            check_authorization_state if check_authorization_state is not None
            else settings.X402_CHECK_AUTHORIZATION_STATE
        )
        self._clock = clock

    @property
    def executor_address(self) -> Optional[str]:
        if self.signer is None or self.signer.closed:
            return None
        return self.signer.address

    async def process(
        self,
        payment_header: str,
        requirement: PaymentRequirements,
        resource: ResourceConfig,
        body: bytes = b"",
        headers: Optional[Dict[str, str]] = None,
        client_ip: str = "unknown",
    ) -> SettlementOutcome:
        """
        Run one settlement attempt for a paid request.

        Args:
            payment_header: Raw X-PAYMENT header value
            requirement: The requirement the payment must satisfy
            resource: Catalog entry for the downstream service
            body: Request body to forward downstream
            headers: Request headers to forward downstream
            client_ip: Caller address, for the audit trail

        Returns:
            SettlementOutcome; never raises for payment failures
        """
        attempt = SettlementAttempt(attempt_id=audit.generate_request_id())
        network = requirement.network

        # HOLD
        try:
            envelope = await run_in_threadpool(self._verify, attempt, payment_header, requirement, client_ip)
            await run_in_threadpool(self._preflight, attempt, client_ip)
        except PaymentError as e:
            return self._void(attempt, e.reason, e.message, network, client_ip)

        # EXECUTE
        attempt.transition(AttemptState.EXECUTE)
        response, failure = await self._execute(attempt, payment_header, requirement, resource, body, headers)

        # VALIDATE
        if failure is None:
            attempt.transition(AttemptState.VALIDATE)
            failure = self._validate(response, resource)

        accepted = failure is None
        self._record_provider(attempt, resource, response, accepted, client_ip)
        if failure is not None:
            reason, message = failure
            return self._void(attempt, reason, message, network, client_ip, response)

        # SETTLE
        attempt.transition(AttemptState.SETTLE)
        return await run_in_threadpool(self._settle, attempt, envelope, network, response, client_ip)

    def _verify(
        self,
        attempt: SettlementAttempt,
        payment_header: str,
        requirement: PaymentRequirements,
        client_ip: str,
    ) -> PaymentEnvelope:
        """Pure verification; raises PaymentError. Burns the nonce last."""
        envelope = decode_payment_header(payment_header)
        auth = envelope.authorization
        attempt.bind(auth)

        check_requirement(envelope, requirement)
        check_validity_window(auth, int(self._clock()))

        signature_check = verify_signature(auth, envelope.signature, self.domain)
        if not signature_check.valid:
            raise PaymentError(Reason.INVALID_SIGNATURE, signature_check.reason or "Invalid signature")

        # The nonce is burned here and stays burned even if the attempt voids.
        replay = self.replay_guard.consume(auth.payer, auth.nonce, expires_at=auth.valid_before)
        if not replay.accepted:
            raise PaymentError(
                Reason.NONCE_REUSED,
                f"Nonce {auth.nonce} has already been used by {auth.payer}",
            )

        logger.info(f"x402: payment verified [{attempt.attempt_id}]: {envelope_summary(envelope)}")
        audit.log_payment_verified(
            client_ip=client_ip,
            payer=auth.payer,
            amount=auth.value,
            nonce=auth.nonce,
            network=envelope.network,
            request_id=attempt.attempt_id,
        )
        return envelope

    def _preflight(self, attempt: SettlementAttempt, client_ip: str) -> None:
        """Blocking chain reads for HOLD; raises PaymentError."""
        auth = attempt.authorization

        if self.check_authorization_state:
            try:
                used = self.chain_client.authorization_state(auth.payer, auth.nonce, self.asset)
            except Exception as e:
                logger.error(f"x402: authorizationState lookup failed: {e}")
                raise PaymentError(
                    Reason.PREFLIGHT_FAILED,
                    f"Could not read on-chain authorization state: {e}",
                ) from e
            if used:
                raise PaymentError(
                    Reason.NONCE_REUSED,
                    f"Nonce {auth.nonce} has already been used on-chain by {auth.payer}",
                )

        executor = self.executor_address
        if executor is None:
            raise PaymentError(Reason.PREFLIGHT_FAILED, "No settlement executor is configured")

        gas = self.gas_oracle.sufficient(executor, self.min_executor_balance)
        balances: Dict[str, Any] = {"executor_balance": str(gas.balance)}
        payer_ok: Optional[bool] = None
        failure: Optional[str] = None if gas.sufficient else f"Executor cannot pay settlement gas: {gas.message}"

        if failure is None and self.check_payer_funds:
            funds = self.token_oracle.sufficient(auth.payer, auth.value)
            balances["payer_balance"] = str(funds.balance)
            payer_ok = funds.sufficient
            if not funds.sufficient:
                failure = f"Payer cannot cover the authorized amount: {funds.message}"

        audit.log_preflight_check(
            client_ip=client_ip,
            executor_ok=gas.sufficient,
            payer_ok=payer_ok,
            balances=balances,
            wallet_address=auth.payer,
            request_id=attempt.attempt_id,
        )
        if failure is not None:
            raise PaymentError(Reason.PREFLIGHT_FAILED, failure)

    async def _execute(self, attempt, payment_header, requirement, resource, body, headers):
        """Call the downstream service once. Returns (response, failure)."""
        url = resolve_upstream(resource)
        timeout = requirement.max_timeout_seconds

        start = time.monotonic()
        try:
            response = await asyncio.wait_for(
                run_in_threadpool(self.invoker.invoke, url, body, headers, payment_header, timeout),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            attempt.service_latency_ms = (time.monotonic() - start) * 1000
            return None, (Reason.SERVICE_UNREACHABLE, f"Service did not respond within {timeout}s")
        except ServiceUnreachableError as e:
            attempt.service_latency_ms = (time.monotonic() - start) * 1000
            return None, (Reason.SERVICE_UNREACHABLE, str(e))
        attempt.service_latency_ms = (time.monotonic() - start) * 1000

        if not response.ok:
            return response, (Reason.SERVICE_ERROR, f"Service returned HTTP {response.status_code}")
        return response, None

    def _validate(self, response: ServiceResponse, resource: ResourceConfig):
        """Apply the resource's result policy. Returns a failure tuple or None."""
        try:
            payload = json.loads(response.body)
        except (ValueError, UnicodeDecodeError):
            return Reason.RESULT_REJECTED, "Service result is not valid JSON"

        try:
            verdict = get_policy(resource.policy).evaluate(payload)
        except Exception as e:
            logger.error(f"x402: result policy {resource.policy!r} failed: {e}")
            return Reason.RESULT_REJECTED, f"Service result could not be validated: {e}"
        if not verdict.acceptable:
            return Reason.RESULT_REJECTED, f"Service result rejected: {verdict.reason}"
        return None

    def _record_provider(self, attempt, resource, response, accepted, client_ip) -> None:
        latency_ms = attempt.service_latency_ms or 0.0
        self.tracker.record(resource.provider, accepted, latency_ms)
        audit.log_service_executed(
            client_ip=client_ip,
            provider=resource.provider,
            status_code=response.status_code if response is not None else None,
            latency_ms=latency_ms,
            accepted=accepted,
            wallet_address=attempt.payer,
            request_id=attempt.attempt_id,
        )

    def _settle(
        self,
        attempt: SettlementAttempt,
        envelope: PaymentEnvelope,
        network: str,
        response: ServiceResponse,
        client_ip: str,
    ) -> SettlementOutcome:
        """Submit the transfer and wait for its receipt (blocking)."""
        try:
            attempt.tx_hash = self.chain_client.submit_transfer_with_authorization(
                envelope.authorization, envelope.signature, self.asset
            )
        except ChainError as e:
            return self._irregular(
                attempt, Reason.SETTLEMENT_REJECTED_ON_CHAIN,
                f"Settlement submission failed after service delivery: {e}",
                network, response, client_ip,
            )

        try:
            receipt = self.chain_client.wait_for_receipt(attempt.tx_hash, self.settlement_timeout)
        except ConfirmationTimeout:
            return self._irregular(
                attempt, Reason.SETTLEMENT_TIMEOUT,
                f"Settlement {attempt.tx_hash} not confirmed within {self.settlement_timeout}s",
                network, response, client_ip,
            )
        except Exception as e:
            # Sent but unobserved: chain state is unknown, not negative.
            return self._irregular(
                attempt, Reason.SETTLEMENT_TIMEOUT,
                f"Could not observe settlement {attempt.tx_hash}: {e}",
                network, response, client_ip,
            )

        if not receipt.succeeded:
            return self._irregular(
                attempt, Reason.SETTLEMENT_REJECTED_ON_CHAIN,
                f"Settlement {attempt.tx_hash} reverted on-chain",
                network, response, client_ip,
            )

        logger.info(f"x402: payment settled [{attempt.attempt_id}]: {attempt.tx_hash}")
        audit.log_payment_settled(
            client_ip=client_ip,
            payer=attempt.payer,
            transaction_hash=attempt.tx_hash,
            network=network,
            amount=attempt.amount,
            request_id=attempt.attempt_id,
        )
        return SettlementOutcome(
            paid=True,
            state=attempt.state,
            attempt_id=attempt.attempt_id,
            network=network,
            amount=attempt.amount,
            tx_hash=attempt.tx_hash,
            service_response=response,
        )

    def _irregular(self, attempt, reason, message, network, response, client_ip) -> SettlementOutcome:
        """Service delivered, settlement not confirmed: flag for reconciliation."""
        attempt.reconciliation = True
        attempt.failure_reason = reason
        attempt.failure_message = message
        logger.error(
            f"x402: reconciliation required [{attempt.attempt_id}] {reason.value}: {message} "
            f"(payer={attempt.payer}, nonce={attempt.nonce}, amount={attempt.amount})"
        )
        audit.log_reconciliation_required(
            client_ip=client_ip,
            payer=attempt.payer,
            reason=reason.value,
            message=message,
            transaction_hash=attempt.tx_hash,
            nonce=attempt.nonce,
            amount=attempt.amount,
            network=network,
            request_id=attempt.attempt_id,
        )
        return SettlementOutcome(
            paid=True,
            state=attempt.state,
            attempt_id=attempt.attempt_id,
            network=network,
            amount=attempt.amount,
            reason=reason,
            message=message,
            tx_hash=attempt.tx_hash,
            reconciliation=True,
            service_response=response,
        )

    def _void(self, attempt, reason, message, network, client_ip, response=None) -> SettlementOutcome:
        attempt.void(reason, message)
        stage = reason_stage(reason)
        logger.warning(f"x402: payment voided [{attempt.attempt_id}] {reason.value}: {message}")

        if reason in VERIFICATION_REASONS:
            audit.log_payment_rejected(
                client_ip=client_ip,
                reason=reason.value,
                stage=stage,
                message=message,
                wallet_address=attempt.payer,
                request_id=attempt.attempt_id,
            )
        else:
            audit.log_payment_voided(
                client_ip=client_ip,
                reason=reason.value,
                stage=stage,
                message=message,
                wallet_address=attempt.payer,
                request_id=attempt.attempt_id,
            )

        return SettlementOutcome(
            paid=False,
            state=attempt.state,
            attempt_id=attempt.attempt_id,
            network=network,
            amount=attempt.amount,
            reason=reason,
            message=message,
            service_response=response,
        )
