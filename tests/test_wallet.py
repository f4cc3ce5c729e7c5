"""
Tests for TokenWallet against a mocked Web3 client.

Signing is real (eth_account); only the RPC side is mocked. Token and native
balances are kept per address so funding and transfers see the chain state
they would see on a node.
"""

from decimal import Decimal
from unittest.mock import MagicMock

import pytest
from eth_account import Account
from web3 import Web3
from web3.exceptions import TimeExhausted

from core.errors import ChainError, InsufficientFunds, TransferFailed
from core.profiles import WalletRef
from core.wallet import TokenWallet

TOKEN = "0x82b9e52b26a2954e113f94ff26647754d5a4247d"
TREASURY_KEY = "0x" + "11" * 32
SENDER_KEY = "0x" + "22" * 32
TREASURY = Account.from_key(TREASURY_KEY).address
SENDER = Account.from_key(SENDER_KEY).address
DEAD = "0x000000000000000000000000000000000000dEaD"
TX_HASH = "0x" + "12" * 32


@pytest.fixture
def token_balances():
    return {TREASURY: 1_000_000_000, SENDER: 10_000_000}


@pytest.fixture
def native_balances():
    return {}


@pytest.fixture
def client(native_balances):
    client = MagicMock()
    client.eth.chain_id = 421614
    client.eth.gas_price = 100_000_000
    client.eth.get_transaction_count.return_value = 0
    client.eth.get_balance.side_effect = lambda address: native_balances.get(address, 0)
    client.eth.send_raw_transaction.return_value = b"\x12" * 32
    client.eth.wait_for_transaction_receipt.return_value = {"status": 1, "blockNumber": 9}
    return client


@pytest.fixture
def token(client, token_balances):
    token = client.eth.contract.return_value

    def balance_of(owner):
        call = MagicMock()
        call.call.side_effect = lambda: token_balances.get(owner, 0)
        return call

    token.functions.balanceOf.side_effect = balance_of
    token.functions.transfer.return_value.build_transaction.return_value = {
        "to": Web3.to_checksum_address(TOKEN),
        "data": "0x",
        "value": 0,
        "gas": 60_000,
        "gasPrice": 100_000_000,
        "nonce": 0,
        "chainId": 421614,
    }
    return token


@pytest.fixture
def token_wallet(client, token):
    return TokenWallet(
        rpc_url="http://localhost:8545",
        token_address=TOKEN,
        treasury_private_key=TREASURY_KEY,
        client=client,
    )


def sender_wallet() -> WalletRef:
    return WalletRef(address=SENDER, secret=SENDER_KEY)


class TestBalances:
    @pytest.mark.asyncio
    async def test_balance_in_whole_tokens(self, token_wallet, token, token_balances):
        token_balances[DEAD] = 1_500_000
        assert await token_wallet.get_balance(DEAD.lower()) == Decimal("1.5")
        token.functions.balanceOf.assert_called_with(DEAD)

    @pytest.mark.asyncio
    async def test_rpc_failure_is_chain_error(self, token_wallet, token):
        token.functions.balanceOf.side_effect = OSError("connection refused")
        with pytest.raises(ChainError):
            await token_wallet.get_balance(DEAD)

    @pytest.mark.asyncio
    async def test_bad_address_is_chain_error(self, token_wallet):
        with pytest.raises(ChainError):
            await token_wallet.get_balance("not-an-address")

    def test_unit_conversion(self, token_wallet):
        assert token_wallet._to_units(Decimal("0.000001")) == 1
        assert token_wallet._to_units(Decimal("100")) == 100_000_000
        assert token_wallet._from_units(2_500_000) == Decimal("2.5")

    @pytest.mark.parametrize("amount", ["0.0000001", "1.2345678"])
    def test_unit_conversion_never_truncates(self, token_wallet, amount):
        with pytest.raises(ValueError):
            token_wallet._to_units(Decimal(amount))


class TestGenerateWallet:
    @pytest.mark.asyncio
    async def test_secret_controls_address(self, token_wallet):
        ref = await token_wallet.generate_wallet()
        assert ref.address.startswith("0x")
        assert len(ref.secret) == 66
        assert Account.from_key(ref.secret).address == ref.address

    @pytest.mark.asyncio
    async def test_wallets_are_distinct(self, token_wallet):
        first = await token_wallet.generate_wallet()
        second = await token_wallet.generate_wallet()
        assert first.address != second.address


class TestTransfer:
    @pytest.mark.asyncio
    async def test_signs_and_sends(self, token_wallet, token, client):
        receipt = await token_wallet.transfer(sender_wallet(), DEAD, Decimal("2.5"), attempt_id="k1")

        token.functions.transfer.assert_called_once_with(DEAD, 2_500_000)
        client.eth.send_raw_transaction.assert_called_once()
        assert receipt.tx_hash == TX_HASH
        assert receipt.block_number == 9

    @pytest.mark.asyncio
    async def test_balance_checked_before_signing(self, token_wallet, client, token_balances):
        token_balances[SENDER] = 1_000_000
        with pytest.raises(InsufficientFunds) as excinfo:
            await token_wallet.transfer(sender_wallet(), DEAD, Decimal("5"))
        assert excinfo.value.balance == Decimal("1")
        client.eth.send_raw_transaction.assert_not_called()

    @pytest.mark.asyncio
    async def test_sub_unit_amount_never_sent(self, token_wallet, client):
        with pytest.raises(TransferFailed):
            await token_wallet.transfer(sender_wallet(), DEAD, Decimal("0.0000001"))
        client.eth.send_raw_transaction.assert_not_called()

    @pytest.mark.asyncio
    async def test_revert_is_transfer_failed(self, token_wallet, client):
        client.eth.wait_for_transaction_receipt.return_value = {"status": 0, "blockNumber": 9}
        with pytest.raises(TransferFailed):
            await token_wallet.transfer(sender_wallet(), DEAD, Decimal("1"))

    @pytest.mark.asyncio
    async def test_receipt_timeout_is_transfer_failed(self, token_wallet, client):
        client.eth.wait_for_transaction_receipt.side_effect = TimeExhausted("no receipt")
        with pytest.raises(TransferFailed):
            await token_wallet.transfer(sender_wallet(), DEAD, Decimal("1"))

    @pytest.mark.asyncio
    async def test_unusable_key(self, token_wallet, client):
        with pytest.raises(TransferFailed):
            await token_wallet.transfer(WalletRef(address=DEAD, secret="garbage"), DEAD, Decimal("1"))
        client.eth.send_raw_transaction.assert_not_called()


class TestFunding:
    @pytest.mark.asyncio
    async def test_sends_token_then_gas(self, token_wallet, token, client):
        hashes = await token_wallet.fund_wallet(DEAD)

        token.functions.transfer.assert_called_once_with(DEAD, 100_000_000)
        assert client.eth.send_raw_transaction.call_count == 2
        assert hashes == {"token": TX_HASH, "gas": TX_HASH}

    @pytest.mark.asyncio
    async def test_empty_treasury(self, token_wallet, client, token_balances):
        token_balances[TREASURY] = 0
        with pytest.raises(InsufficientFunds):
            await token_wallet.fund_wallet(DEAD)
        client.eth.send_raw_transaction.assert_not_called()

    @pytest.mark.asyncio
    async def test_retry_after_partial_funding_only_sends_gas(self, token_wallet, token, client, token_balances):
        token_balances[DEAD] = 100_000_000

        hashes = await token_wallet.fund_wallet(DEAD)

        token.functions.transfer.assert_not_called()
        assert client.eth.send_raw_transaction.call_count == 1
        assert hashes == {"gas": TX_HASH}

    @pytest.mark.asyncio
    async def test_fully_funded_wallet_sends_nothing(self, token_wallet, client, token_balances, native_balances):
        token_balances[DEAD] = 100_000_000
        native_balances[DEAD] = Web3.to_wei(Decimal("0.01"), "ether")

        assert await token_wallet.fund_wallet(DEAD) == {}
        client.eth.send_raw_transaction.assert_not_called()

    @pytest.mark.asyncio
    async def test_gas_failure_surfaces_as_chain_error(self, token_wallet, client):
        client.eth.send_raw_transaction.side_effect = [b"\x12" * 32, OSError("rpc dropped")]
        with pytest.raises(ChainError):
            await token_wallet.fund_wallet(DEAD)
