import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import FrozenSet, List, Mapping, Optional

DEFAULT_RPC_URL = "https://sepolia-rollup.arbitrum.io/rpc"
DEFAULT_TOKEN_ADDRESS = "0x82b9e52b26a2954e113f94ff26647754d5a4247d"
DEFAULT_EXPLORER_TX_URL = "https://sepolia.arbiscan.io/tx/"


def _int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = (env.get(key) or "").strip()
    return int(raw) if raw.lstrip("-").isdigit() else default


def _float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = (env.get(key) or "").strip()
    try:
        return float(raw) if raw else default
    except ValueError:
        return default


def _decimal(env: Mapping[str, str], key: str, default: str) -> Decimal:
    raw = (env.get(key) or "").strip()
    try:
        return Decimal(raw or default)
    except InvalidOperation:
        return Decimal(default)


@dataclass(frozen=True)
class Settings:
    openai_api_key: str = ""
    model: str = "gpt-4.1"
    openai_timeout: float = 30.0
    openai_max_retries: int = 2

    waha_api_url: str = ""
    waha_api_key: str = ""
    waha_session: str = "default"
    allowed_numbers: FrozenSet[str] = field(default_factory=frozenset)
    webhook_host: str = "0.0.0.0"
    webhook_port: int = 8080

    rpc_url: str = DEFAULT_RPC_URL
    token_address: str = DEFAULT_TOKEN_ADDRESS
    token_decimals: int = 6
    token_symbol: str = "MXNB"
    treasury_private_key: str = ""
    bootstrap_token_amount: Decimal = Decimal("100")
    bootstrap_gas_amount: Decimal = Decimal("0.01")
    explorer_tx_url: str = DEFAULT_EXPLORER_TX_URL
    tx_timeout: float = 120.0

    history_limit: int = 10
    onboarding_history_limit: int = 6
    db_path: str = "wapa.db"
    prompts_path: Optional[str] = None
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if env is None else env
        allowed = frozenset(
            item.strip() for item in (env.get("WHATSAPP_ALLOWED_NUMBERS") or "").split(",") if item.strip()
        )
        return cls(
            openai_api_key=env.get("OPENAI_API_KEY", ""),
            model=env.get("MODEL", "gpt-4.1"),
            openai_timeout=_float(env, "OPENAI_TIMEOUT", 30.0),
            openai_max_retries=_int(env, "OPENAI_MAX_RETRIES", 2),
            waha_api_url=(env.get("WAHA_API_URL") or "").rstrip("/"),
            waha_api_key=env.get("WAHA_API_KEY", ""),
            waha_session=env.get("WAHA_SESSION") or "default",
            allowed_numbers=allowed,
            webhook_host=env.get("WEBHOOK_HOST") or "0.0.0.0",
            webhook_port=_int(env, "WEBHOOK_PORT", 8080),
            rpc_url=env.get("RPC_URL") or DEFAULT_RPC_URL,
            token_address=env.get("TOKEN_ADDRESS") or DEFAULT_TOKEN_ADDRESS,
            token_decimals=_int(env, "TOKEN_DECIMALS", 6),
            token_symbol=env.get("TOKEN_SYMBOL") or "MXNB",
            treasury_private_key=env.get("TREASURY_PRIVATE_KEY", ""),
            bootstrap_token_amount=_decimal(env, "BOOTSTRAP_TOKEN_AMOUNT", "100"),
            bootstrap_gas_amount=_decimal(env, "BOOTSTRAP_GAS_AMOUNT", "0.01"),
            explorer_tx_url=env.get("EXPLORER_TX_URL") or DEFAULT_EXPLORER_TX_URL,
            tx_timeout=_float(env, "TX_TIMEOUT", 120.0),
            history_limit=max(1, _int(env, "HISTORY_LIMIT", 10)),
            onboarding_history_limit=max(1, _int(env, "ONBOARDING_HISTORY_LIMIT", 6)),
            db_path=env.get("DB_PATH") or "wapa.db",
            prompts_path=env.get("PROMPTS_PATH") or None,
            log_level=(env.get("LOG_LEVEL") or "INFO").upper(),
        )

    def missing(self) -> List[str]:
        required = {
            "OPENAI_API_KEY": self.openai_api_key,
            "WAHA_API_URL": self.waha_api_url,
            "WHATSAPP_ALLOWED_NUMBERS": ",".join(sorted(self.allowed_numbers)),
            "TREASURY_PRIVATE_KEY": self.treasury_private_key,
        }
        return [key for key, value in required.items() if not value]
