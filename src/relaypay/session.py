"""
Trading session orchestration.

A session binds the owner's signing key to its smart account and an API
credential. ``initialize()`` walks the account through every prerequisite,
checking on-chain state before each mutating step so it can be re-run after
any failure or timeout:

    idle -> checking -> [deploying] -> approving -> obtaining_credential -> complete

Any failure returns the manager to ``idle`` with the error attached. Every
transition yields an immutable SessionSnapshot.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Callable, Optional

from .address import FactoryConfig, derive_account_address, normalize_address
from .approvals import ApprovalChecker, build_approval_operations
from .audit import AuditTrail, EventType
from .config import BuilderCredentials, ChainConfig
from .credentials import Credential, CredentialIssuer, CredentialStore
from .errors import RelayPayError
from .relay import RelayExecutor, TxHandle
from .signer import SerializedSigner, Signer

logger = logging.getLogger(__name__)


class SessionStep(str, Enum):
    IDLE = "idle"
    CHECKING = "checking"
    DEPLOYING = "deploying"
    APPROVING = "approving"
    OBTAINING_CREDENTIAL = "obtaining_credential"
    COMPLETE = "complete"


@dataclass(frozen=True)
class SessionSnapshot:
    step: SessionStep
    account_address: Optional[str] = None
    error: Optional[Exception] = None
    instruction: Optional[str] = None
    in_flight: bool = False

    @property
    def error_code(self) -> Optional[str]:
        if self.error is None:
            return None
        return getattr(self.error, "code", type(self.error).__name__)


@dataclass
class Session:
    """A ready trading session: execution client plus credential."""

    owner: str
    account_address: str
    credential: Credential = field(repr=False)
    relay: RelayExecutor = field(repr=False)

    def transfer(self, recipient: str, amount: Decimal | int | str) -> TxHandle:
        return self.relay.transfer(recipient, amount)


RelayFactory = Callable[[Signer], RelayExecutor]


class SessionManager:
    """
    Drives one owner's session setup.

    Collaborators are injected so the manager runs the same against real
    services or in-memory fakes. The relay client is only built after the
    signer is confirmed to be on the target chain.
    """

    def __init__(
        self,
        signer: Signer,
        config: ChainConfig,
        approvals: ApprovalChecker,
        issuer: CredentialIssuer,
        store: CredentialStore,
        relay_factory: Optional[RelayFactory] = None,
        builder: Optional[BuilderCredentials] = None,
        audit: Optional[AuditTrail] = None,
        on_transition: Optional[Callable[[SessionSnapshot], None]] = None,
    ):
        self.signer = signer if isinstance(signer, SerializedSigner) else SerializedSigner(signer)
        self.config = config
        self.approvals = approvals
        self.issuer = issuer
        self.store = store
        self.audit = audit
        self.on_transition = on_transition
        self._relay_factory = relay_factory or (lambda s: RelayExecutor(s, config, builder=builder))

        self.owner = normalize_address(self.signer.address)
        self.account_address = derive_account_address(self.owner, FactoryConfig.from_chain_config(config))

        self._guard = threading.Lock()
        self._state_lock = threading.Lock()
        self._snapshot = SessionSnapshot(step=SessionStep.IDLE, account_address=self.account_address)
        self._history: list[SessionSnapshot] = [self._snapshot]
        self._session: Optional[Session] = None
        self._relay: Optional[RelayExecutor] = None

    @property
    def snapshot(self) -> SessionSnapshot:
        return self._snapshot

    @property
    def step(self) -> SessionStep:
        return self._snapshot.step

    @property
    def history(self) -> tuple[SessionSnapshot, ...]:
        with self._state_lock:
            return tuple(self._history)

    @property
    def session(self) -> Optional[Session]:
        return self._session

    def initialize(self) -> SessionSnapshot:
        """Bring the session to ``complete``. No-op if complete or already running."""
        if self._snapshot.step == SessionStep.COMPLETE:
            return self._snapshot
        if not self._guard.acquire(blocking=False):
            logger.debug("Initialization for %s already in flight", self.owner)
            return self._snapshot
        try:
            return self._run(self._initialize_steps)
        finally:
            self._guard.release()

    def restore(self) -> SessionSnapshot:
        """Resume from a cached credential without any mutating call.

        Only completes when the account is already deployed and approved;
        otherwise settles back to ``idle`` so ``initialize()`` can finish.
        """
        if self._snapshot.step == SessionStep.COMPLETE:
            return self._snapshot
        if not self._guard.acquire(blocking=False):
            return self._snapshot
        try:
            credential = self.store.get(self.owner)
            if credential is None:
                logger.debug("No cached credential for %s", self.owner)
                return self._snapshot
            return self._run(lambda: self._restore_steps(credential))
        finally:
            self._guard.release()

    def logout(self) -> SessionSnapshot:
        self.store.clear(self.owner)
        self._session = None
        self._close_relay()
        if self.audit:
            self.audit.log(EventType.CREDENTIAL_CLEARED, owner=self.owner, account=self.account_address)
        logger.info("Logged out %s", self.owner)
        return self._transition(SessionStep.IDLE)

    def _run(self, steps: Callable[[], SessionSnapshot]) -> SessionSnapshot:
        self._transition(SessionStep.CHECKING, in_flight=True)
        try:
            return steps()
        except RelayPayError as e:
            logger.error("Session setup for %s failed at %s: %s", self.owner, self._snapshot.step.value, e)
            self._fail(e)
            return self._snapshot
        except Exception as e:
            self._fail(e)
            raise

    def close(self) -> None:
        self._session = None
        self._close_relay()

    def _open_relay(self) -> RelayExecutor:
        self._close_relay()
        self._relay = self._relay_factory(self.signer)
        return self._relay

    def _close_relay(self) -> None:
        relay, self._relay = self._relay, None
        close = getattr(relay, "close", None)
        if close is not None:
            close()

    def _initialize_steps(self) -> SessionSnapshot:
        if not self._ensure_chain(switch=True):
            return self._snapshot

        relay = self._open_relay()

        if not relay.get_deployed(self.account_address):
            self._transition(SessionStep.DEPLOYING, in_flight=True)
            relay.deploy().wait()

        self._transition(SessionStep.APPROVING, in_flight=True)
        if not self.approvals.check_sufficient(self.account_address):
            ops = build_approval_operations(self.config)
            relay.execute(ops, metadata="approve trading spenders").wait()

        self._transition(SessionStep.OBTAINING_CREDENTIAL, in_flight=True)
        credential = self.store.get(self.owner)
        if credential is None:
            credential = self.issuer.obtain(self.signer)
            self.store.set(self.owner, credential)
            if self.audit:
                self.audit.log(EventType.CREDENTIAL_ISSUED, owner=self.owner, account=self.account_address)
            logger.info("Issued credential %s for %s", credential.key, self.owner)

        return self._complete(credential, relay)

    def _restore_steps(self, credential: Credential) -> SessionSnapshot:
        if not self._ensure_chain(switch=False):
            return self._snapshot
        relay = self._open_relay()
        if not relay.get_deployed(self.account_address) or not self.approvals.check_sufficient(self.account_address):
            logger.info("Cached session for %s needs setup; waiting for initialize()", self.owner)
            self._close_relay()
            return self._transition(SessionStep.IDLE)
        return self._complete(credential, relay)

    def _ensure_chain(self, switch: bool) -> bool:
        current = self.signer.chain_id()
        if current == self.config.chain_id:
            return True
        if switch:
            logger.warning("Signer on chain %d, requesting switch to %d", current, self.config.chain_id)
            self.signer.switch_chain(self.config.chain_id)
            instruction = f"Network switched to chain {self.config.chain_id}; initialize again to continue"
        else:
            instruction = f"Switch the wallet from chain {current} to chain {self.config.chain_id}"
        self._transition(SessionStep.IDLE, instruction=instruction)
        return False

    def _complete(self, credential: Credential, relay: RelayExecutor) -> SessionSnapshot:
        self._session = Session(
            owner=self.owner,
            account_address=self.account_address,
            credential=credential,
            relay=relay,
        )
        if self.audit:
            self.audit.log(EventType.SESSION_READY, owner=self.owner, account=self.account_address)
        return self._transition(SessionStep.COMPLETE)

    def _fail(self, error: Exception) -> None:
        self._close_relay()
        if self.audit:
            self.audit.log(
                EventType.SESSION_FAILED,
                owner=self.owner,
                account=self.account_address,
                success=False,
                reason=str(error),
                details={"step": self._snapshot.step.value, "code": getattr(error, "code", type(error).__name__)},
            )
        self._transition(SessionStep.IDLE, error=error)

    def _transition(
        self,
        step: SessionStep,
        error: Optional[Exception] = None,
        instruction: Optional[str] = None,
        in_flight: bool = False,
    ) -> SessionSnapshot:
        snapshot = SessionSnapshot(
            step=step,
            account_address=self.account_address,
            error=error,
            instruction=instruction,
            in_flight=in_flight,
        )
        with self._state_lock:
            self._snapshot = snapshot
            self._history.append(snapshot)
        logger.info("Session %s -> %s", self.owner, step.value)
        if self.audit and step not in (SessionStep.IDLE, SessionStep.COMPLETE):
            self.audit.log(EventType.SESSION_STEP, owner=self.owner, account=self.account_address, details={"step": step.value})
        if self.on_transition is not None:
            self.on_transition(snapshot)
        return snapshot
