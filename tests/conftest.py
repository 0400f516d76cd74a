"""Shared fixtures and in-memory collaborators for relaypay tests."""

import threading

import pytest
from eth_abi import decode, encode
from eth_account import Account
from eth_utils import function_signature_to_4byte_selector

from relaypay.audit import AuditTrail
from relaypay.config import ChainConfig
from relaypay.credentials import Credential, MemoryCredentialStore
from relaypay.errors import NetworkError
from relaypay.session import SessionManager


ALLOWANCE_SELECTOR = function_signature_to_4byte_selector("allowance(address,address)")
IS_APPROVED_SELECTOR = function_signature_to_4byte_selector("isApprovedForAll(address,address)")


@pytest.fixture(autouse=True)
def isolated_home(tmp_path, monkeypatch):
    home = tmp_path / "relaypay-home"
    monkeypatch.setenv("RELAYPAY_HOME", str(home))
    monkeypatch.delenv("RELAYPAY_CREDENTIAL_KEY", raising=False)
    monkeypatch.delenv("RELAYPAY_AUDIT_HMAC_KEY", raising=False)
    return home


@pytest.fixture
def config():
    return ChainConfig()


@pytest.fixture
def audit(tmp_path):
    return AuditTrail(path=tmp_path / "audit.jsonl", key_path=tmp_path / "secret" / "audit_hmac.key")


class FakeApprovalRpc:
    """Answers allowance/isApprovedForAll eth_calls from dictionaries."""

    def __init__(self, config, allowance=0, approved=False):
        self.config = config
        self.allowances = {s: allowance for s in config.spenders}
        self.operators = {s: approved for s in config.spenders}
        self.calls = []
        self.fail = False

    def call(self, to, data):
        self.calls.append((to, data))
        if self.fail:
            raise NetworkError("node unreachable")
        _, spender = decode(["address", "address"], data[4:])
        spender = spender.lower()
        if data[:4] == ALLOWANCE_SELECTOR:
            assert to == self.config.usdc
            return encode(["uint256"], [self.allowances[spender]])
        if data[:4] == IS_APPROVED_SELECTOR:
            assert to == self.config.ctf
            return encode(["bool"], [self.operators[spender]])
        raise AssertionError(f"unexpected call {data[:4].hex()}")


class FakeHandle:
    def __init__(self, tx_id, tx_hash, error=None, on_wait=None):
        self.tx_id = tx_id
        self.tx_hash = tx_hash
        self.error = error
        self.on_wait = on_wait

    def wait(self, timeout=None, poll_interval=None):
        if self.on_wait is not None:
            self.on_wait()
        if self.error is not None:
            raise self.error
        return self.tx_hash


class FakeChain:
    """On-chain facts shared by the fake relay and fake approval checker."""

    def __init__(self, deployed=False, approved=False):
        self.deployed = deployed
        self.approved = approved
        self.mutations = []
        self.reads = []
        self.deploy_error = None
        self.execute_error = None
        self.deploy_gate = None
        self.closed = []


class FakeRelay:
    def __init__(self, chain, signer):
        self.chain = chain
        self.signer = signer

    def get_deployed(self, account):
        self.chain.reads.append(("get_deployed", account))
        return self.chain.deployed

    def deploy(self):
        self.chain.mutations.append(("deploy",))
        if self.chain.deploy_gate is not None:
            self.chain.deploy_gate.wait(5)

        def land():
            if self.chain.deploy_error is None:
                self.chain.deployed = True

        return FakeHandle("relay-deploy", "0x" + "aa" * 32, error=self.chain.deploy_error, on_wait=land)

    def execute(self, operations, metadata=""):
        self.chain.mutations.append(("execute", len(operations), metadata))

        def land():
            if self.chain.execute_error is None:
                self.chain.approved = True

        return FakeHandle("relay-exec", "0x" + "bb" * 32, error=self.chain.execute_error, on_wait=land)

    def transfer(self, recipient, amount):
        self.chain.mutations.append(("transfer", recipient, amount))
        return FakeHandle("relay-transfer", "0x" + "cc" * 32)

    def close(self):
        self.chain.closed.append(self)


class FakeApprovals:
    def __init__(self, chain):
        self.chain = chain

    def check_sufficient(self, account):
        self.chain.reads.append(("check_sufficient", account))
        return self.chain.approved


class FakeSigner:
    def __init__(self, chain_id=137, account=None):
        self.account = account or Account.create()
        self._chain_id = chain_id
        self.switches = []
        self.signed = []

    @property
    def address(self):
        return self.account.address

    def chain_id(self):
        return self._chain_id

    def switch_chain(self, chain_id):
        self.switches.append(chain_id)
        self._chain_id = chain_id

    def sign_typed_data(self, typed_data):
        self.signed.append(typed_data["primaryType"])
        return b"\x11" * 65


class FakeIssuer:
    def __init__(self, credential=None, error=None):
        self.credential = credential or Credential(key="api-key", secret="api-secret", passphrase="api-pass")
        self.error = error
        self.calls = 0

    def obtain(self, signer):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.credential


class RecordingStore(MemoryCredentialStore):
    def __init__(self, events=None):
        super().__init__()
        self.events = events if events is not None else []

    def set(self, owner, credential):
        self.events.append("store.set")
        super().set(owner, credential)

    def clear(self, owner):
        self.events.append("store.clear")
        super().clear(owner)


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def signer():
    return FakeSigner()


@pytest.fixture
def issuer():
    return FakeIssuer()


@pytest.fixture
def store():
    return RecordingStore()


@pytest.fixture
def make_manager(config, chain, signer, issuer, store):
    """Build a SessionManager wired to the in-memory fakes."""
    relay_builds = []

    def build(**overrides):
        def relay_factory(s):
            relay_builds.append(s)
            return FakeRelay(chain, s)

        kwargs = dict(
            signer=signer,
            config=config,
            approvals=FakeApprovals(chain),
            issuer=issuer,
            store=store,
            relay_factory=relay_factory,
        )
        kwargs.update(overrides)
        return SessionManager(**kwargs)

    build.relay_builds = relay_builds
    return build


@pytest.fixture
def fake_approval_rpc(config):
    return FakeApprovalRpc(config)


@pytest.fixture
def gate():
    return threading.Event()
