import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Dict, Optional, TypeVar

from eth_account import Account
from web3 import Web3
from web3.exceptions import TimeExhausted, Web3Exception

from .errors import ChainError, InsufficientFunds, TransferFailed
from .profiles import WalletRef

log = logging.getLogger(__name__)

T = TypeVar("T")

ERC20_ABI = [
    {
        "constant": False,
        "inputs": [
            {"name": "to", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "name": "transfer",
        "outputs": [{"name": "", "type": "bool"}],
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [{"name": "owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [],
        "name": "decimals",
        "outputs": [{"name": "", "type": "uint8"}],
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [],
        "name": "symbol",
        "outputs": [{"name": "", "type": "string"}],
        "type": "function",
    },
]


@dataclass(frozen=True)
class TransferReceipt:
    tx_hash: str
    block_number: Optional[int] = None


class TokenWallet:
    """ERC-20 stablecoin helper: custodial wallet creation, funding, balances and transfers."""

    def __init__(
        self,
        *,
        rpc_url: str,
        token_address: str,
        treasury_private_key: str,
        decimals: int = 6,
        symbol: str = "MXNB",
        bootstrap_token_amount: Decimal = Decimal("100"),
        bootstrap_gas_amount: Decimal = Decimal("0.01"),
        tx_timeout: float = 120.0,
        request_timeout: float = 30.0,
        client: Optional[Web3] = None,
    ) -> None:
        self.client = client or Web3(
            Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": request_timeout})
        )
        self.token_address = Web3.to_checksum_address(token_address)
        self.token = self.client.eth.contract(address=self.token_address, abi=ERC20_ABI)
        self.decimals = decimals
        self.symbol = symbol
        self.bootstrap_token_amount = Decimal(bootstrap_token_amount)
        self.bootstrap_gas_amount = Decimal(bootstrap_gas_amount)
        self.tx_timeout = tx_timeout
        self._treasury = Account.from_key(treasury_private_key)

    @property
    def treasury_address(self) -> str:
        return self._treasury.address

    def _to_units(self, amount: Decimal) -> int:
        scaled = Decimal(amount).scaleb(self.decimals)
        if scaled != scaled.to_integral_value():
            raise ValueError(f"{amount} is finer than {self.decimals} decimals")
        return int(scaled)

    def _from_units(self, raw: int) -> Decimal:
        return Decimal(raw).scaleb(-self.decimals)

    async def _run(self, func: Callable[[], T]) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func)

    async def generate_wallet(self) -> WalletRef:
        account = Account.create()
        log.info("Generated wallet %s", account.address)
        return WalletRef(address=account.address, secret="0x" + bytes(account.key).hex())

    async def get_balance(self, address: str) -> Decimal:
        def _balance() -> int:
            owner = Web3.to_checksum_address(address)
            return self.token.functions.balanceOf(owner).call()

        try:
            raw = await self._run(_balance)
        except (Web3Exception, ValueError, OSError) as exc:
            log.warning("Failed to fetch %s balance for %s: %s", self.symbol, address, exc)
            raise ChainError(f"balance query failed for {address}") from exc
        return self._from_units(raw)

    def _send_signed(self, account: Any, tx: Dict[str, Any]) -> TransferReceipt:
        signed = account.sign_transaction(tx)
        tx_hash = self.client.eth.send_raw_transaction(signed.raw_transaction)
        receipt = self.client.eth.wait_for_transaction_receipt(tx_hash, timeout=self.tx_timeout)
        if receipt.get("status") == 0:
            raise TransferFailed(f"transaction {Web3.to_hex(tx_hash)} reverted")
        return TransferReceipt(tx_hash=Web3.to_hex(tx_hash), block_number=receipt.get("blockNumber"))

    def _token_transfer(self, account: Any, to_address: str, amount: Decimal) -> TransferReceipt:
        units = self._to_units(amount)
        available = self.token.functions.balanceOf(account.address).call()
        if available < units:
            raise InsufficientFunds(self._from_units(available), amount)
        tx = self.token.functions.transfer(
            Web3.to_checksum_address(to_address), units
        ).build_transaction(
            {
                "from": account.address,
                "nonce": self.client.eth.get_transaction_count(account.address),
                "chainId": self.client.eth.chain_id,
            }
        )
        return self._send_signed(account, tx)

    def _native_transfer(self, account: Any, to_address: str, amount: Decimal) -> TransferReceipt:
        tx = {
            "to": Web3.to_checksum_address(to_address),
            "value": Web3.to_wei(amount, "ether"),
            "gas": 21000,
            "gasPrice": self.client.eth.gas_price,
            "nonce": self.client.eth.get_transaction_count(account.address),
            "chainId": self.client.eth.chain_id,
        }
        return self._send_signed(account, tx)

    async def fund_wallet(self, address: str) -> Dict[str, str]:
        """Bring a wallet up to the bootstrap token and gas amounts from the treasury.

        Legs the wallet already covers are skipped, so a call repeated after a
        partial funding only sends what is still missing. Returns the hashes of
        the transactions actually sent, keyed ``token`` and ``gas``.
        """
        treasury = self._treasury
        sent: Dict[str, str] = {}
        try:
            target = Web3.to_checksum_address(address)
            token_units = self._to_units(self.bootstrap_token_amount)
            held = await self._run(lambda: self.token.functions.balanceOf(target).call())
            if held < token_units:
                receipt = await self._run(
                    lambda: self._token_transfer(treasury, target, self.bootstrap_token_amount)
                )
                sent["token"] = receipt.tx_hash
                log.info(
                    "Funded %s with %s %s (tx=%s)",
                    target,
                    self.bootstrap_token_amount,
                    self.symbol,
                    receipt.tx_hash,
                )
            gas_wei = Web3.to_wei(self.bootstrap_gas_amount, "ether")
            native = await self._run(lambda: self.client.eth.get_balance(target))
            if native < gas_wei:
                receipt = await self._run(
                    lambda: self._native_transfer(treasury, target, self.bootstrap_gas_amount)
                )
                sent["gas"] = receipt.tx_hash
                log.info("Funded %s with %s gas (tx=%s)", target, self.bootstrap_gas_amount, receipt.tx_hash)
        except ChainError:
            raise
        except (Web3Exception, ValueError, OSError) as exc:
            log.error("Bootstrap funding failed for %s: %s", address, exc)
            raise ChainError(f"could not fund wallet {address}") from exc
        return sent

    async def transfer(
        self,
        wallet: WalletRef,
        to_address: str,
        amount: Decimal,
        *,
        attempt_id: str = "",
    ) -> TransferReceipt:
        try:
            account = Account.from_key(wallet.secret)
        except (ValueError, TypeError) as exc:
            raise TransferFailed(f"wallet {wallet.address} has unusable key material") from exc
        try:
            receipt = await self._run(lambda: self._token_transfer(account, to_address, amount))
        except ChainError:
            raise
        except TimeExhausted as exc:
            log.error("Transfer %s timed out waiting for receipt", attempt_id)
            raise TransferFailed("transfer receipt timed out") from exc
        except (Web3Exception, ValueError, OSError) as exc:
            log.error("Transfer %s failed: %s", attempt_id, exc)
            raise TransferFailed(str(exc)) from exc
        log.info(
            "Transfer %s sent %s %s %s -> %s (tx=%s)",
            attempt_id,
            amount,
            self.symbol,
            wallet.address,
            to_address,
            receipt.tx_hash,
        )
        return receipt
