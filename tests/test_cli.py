"""CLI tests, including key-handling hardening."""

import pytest
from click.testing import CliRunner
from eth_account import Account

from relaypay import cli, session
from relaypay.address import FactoryConfig, derive_account_address
from relaypay.cli import main
from relaypay.config import ChainConfig
from relaypay.errors import NetworkError
from relaypay.payment import TRANSFER_TOPIC
from relaypay.rpc import Receipt, ReceiptLog


OWNER = "0x6e0c80c90ea6c15917308F820Eac91Ce2724B5b5"
TREASURY = "0x3233f590f3cb6a70123bd02b49105be5d5c10df3"
USDC = "0x2791bca1f2de4661ed88a30c99a7a9449aa84174"
TX = "0x" + "ab" * 32
ACCOUNT = derive_account_address(OWNER, FactoryConfig.from_chain_config(ChainConfig()))


def _topic(address):
    return "0x" + "0" * 24 + address[2:].lower()


class ReceiptRpc:
    def __init__(self, receipt):
        self.receipt = receipt
        self.closed = False

    def get_transaction_receipt(self, tx_hash):
        return self.receipt

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.closed = True
        return False


def usdc_receipt(to, base_units, sender=ACCOUNT):
    log = ReceiptLog(
        address=USDC,
        topics=[TRANSFER_TOPIC, _topic(sender), _topic(to)],
        data="0x" + base_units.to_bytes(32, "big").hex(),
    )
    return Receipt(transaction_hash=TX, status=1, block_number=1, logs=[log])


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def rpc_receipt(monkeypatch):
    def install(receipt):
        monkeypatch.setattr(cli, "_rpc", lambda config: ReceiptRpc(receipt))

    return install


def test_init_rejects_raw_key_on_argv(runner):
    owner = Account.create()
    result = runner.invoke(main, ["init", "--owner-key", owner.key.hex()])

    assert result.exit_code != 0
    assert "Refusing --owner-key from argv" in result.output


def test_purchase_rejects_raw_key_on_argv(runner):
    owner = Account.create()
    result = runner.invoke(main, ["purchase", "--tier", "basic", "--owner-key", owner.key.hex()])

    assert result.exit_code != 0
    assert "Refusing --owner-key from argv" in result.output


def test_derive_address(runner):
    result = runner.invoke(main, ["derive-address", OWNER])
    assert result.exit_code == 0
    assert result.output.strip() == "0x6d8c4e9aDF5748Af82Dabe2C6225207770d6B4fa"


def test_derive_address_invalid_owner(runner):
    result = runner.invoke(main, ["derive-address", "0x1234"])
    assert result.exit_code == 1
    assert "InvalidInput" in result.output


def test_derive_address_follows_env_config(runner, monkeypatch):
    monkeypatch.setenv("RELAYPAY_SAFE_FACTORY", "0x" + "11" * 20)
    result = runner.invoke(main, ["derive-address", OWNER])
    assert result.exit_code == 0
    assert result.output.strip() != "0x6d8c4e9aDF5748Af82Dabe2C6225207770d6B4fa"


def test_tiers(runner):
    result = runner.invoke(main, ["tiers"])
    assert result.exit_code == 0
    assert "basic" in result.output
    assert "$15.00" in result.output
    assert "1000 generations" in result.output


def test_subscription_none(runner):
    result = runner.invoke(main, ["subscription", OWNER])
    assert result.exit_code == 0
    assert "No subscription" in result.output


def test_verify_payment(runner, rpc_receipt):
    rpc_receipt(usdc_receipt(TREASURY, 5_000_000))
    result = runner.invoke(main, ["verify-payment", TX, "--amount", "5"])
    assert result.exit_code == 0
    assert "$5.00" in result.output


def test_verify_payment_wrong_recipient(runner, rpc_receipt):
    rpc_receipt(usdc_receipt("0x" + "99" * 20, 5_000_000))
    result = runner.invoke(main, ["verify-payment", TX, "--amount", "5"])
    assert result.exit_code == 1
    assert "WrongRecipient" in result.output


def test_credit_then_replay(runner, rpc_receipt):
    rpc_receipt(usdc_receipt(TREASURY, 5_000_000))

    first = runner.invoke(main, ["credit", TX, "--owner", OWNER, "--tier", "basic"])
    assert first.exit_code == 0
    assert "basic active until" in first.output

    status = runner.invoke(main, ["subscription", OWNER])
    assert "Usage:     0 of 50" in status.output
    assert "Remaining: 50" in status.output

    again = runner.invoke(main, ["credit", TX, "--owner", OWNER, "--tier", "basic"])
    assert again.exit_code == 1
    assert "ReplayedPayment" in again.output


def test_credit_underpayment(runner, rpc_receipt):
    rpc_receipt(usdc_receipt(TREASURY, 4_000_000))
    result = runner.invoke(main, ["credit", TX, "--owner", OWNER, "--tier", "basic"])
    assert result.exit_code == 1
    assert "AmountMismatch" in result.output

    status = runner.invoke(main, ["subscription", OWNER])
    assert "No subscription" in status.output


def test_audit_lists_credit_events(runner, rpc_receipt):
    rpc_receipt(usdc_receipt(TREASURY, 5_000_000))
    runner.invoke(main, ["credit", TX, "--owner", OWNER, "--tier", "basic"])

    result = runner.invoke(main, ["audit", "--owner", OWNER])
    assert result.exit_code == 0
    assert "payment_verified" in result.output
    assert "subscription_applied" in result.output


def test_logout(runner):
    result = runner.invoke(main, ["logout", OWNER])
    assert result.exit_code == 0
    assert OWNER.lower() in result.output


def test_credit_rejects_transfer_from_another_account(runner, rpc_receipt):
    rpc_receipt(usdc_receipt(TREASURY, 5_000_000, sender="0x" + "44" * 20))
    result = runner.invoke(main, ["credit", TX, "--owner", OWNER, "--tier", "basic"])
    assert result.exit_code == 1
    assert "WrongPayer" in result.output

    status = runner.invoke(main, ["subscription", OWNER])
    assert "No subscription" in status.output


def test_failed_init_closes_clients(runner, monkeypatch):
    rpc = ReceiptRpc(None)
    relays = []

    class DownRelay:
        def __init__(self, signer, config, builder=None):
            self.closed = False
            relays.append(self)

        def get_deployed(self, address=None):
            raise NetworkError("relay down")

        def close(self):
            self.closed = True

    monkeypatch.setattr(cli, "_rpc", lambda config: rpc)
    monkeypatch.setattr(session, "RelayExecutor", DownRelay)
    owner = Account.create()

    result = runner.invoke(main, ["init", "--yes"], input=owner.key.hex() + "\n")

    assert result.exit_code == 1
    assert "NetworkError" in result.output
    assert rpc.closed
    assert [relay.closed for relay in relays] == [True]
