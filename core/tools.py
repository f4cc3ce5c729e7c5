"""
Tool catalog and dispatcher for model-requested actions.

Every tool the model may call is declared once here: its JSON schema (sent to
the model), the typed argument variant that validates what comes back, and
the placeholder tokens its confirmation message may carry. The dispatcher
validates before any side effect, injects the sender as the acting user and
runs the matching handler against the profile store and the token wallet.
"""

import logging
import re
import uuid
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple, Type

from .errors import ChainError, InsufficientFunds, NotFoundError, TransferFailed, ValidationError
from .formatter import (
    AMOUNT_TOKEN,
    NAME_TOKEN,
    TRANSACTION_DETAILS_TOKEN,
    format_placeholders,
    transaction_details,
)
from .locks import KeyedLocks
from .profiles import ProfileStore, UserProfile, normalize_handle

log = logging.getLogger(__name__)

ACTOR_KEY = "actor_handle"
MESSAGE_KEY = "message"

CHANGE_EMAIL = "change_email"
CHANGE_DISPLAY_NAME = "change_display_name"
GET_BALANCE = "get_balance"
SEND_MONEY = "send_money"
CONTINUE_CONVERSATION = "continue_conversation"

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def _text(arguments: Mapping[str, Any], key: str) -> str:
    value = arguments.get(key)
    if value is None or isinstance(value, (dict, list)):
        raise ValidationError(f"missing required argument: {key}")
    text = str(value).strip()
    if not text:
        raise ValidationError(f"missing required argument: {key}")
    return text


def _actor(arguments: Mapping[str, Any]) -> str:
    actor = str(arguments.get(ACTOR_KEY) or "").strip()
    if not actor:
        raise ValidationError("no acting user for tool call")
    return actor


def _amount(value: Any) -> Decimal:
    if isinstance(value, bool) or value is None:
        raise ValidationError("missing required argument: amount")
    try:
        amount = Decimal(str(value).strip())
    except InvalidOperation as exc:
        raise ValidationError(f"amount is not a number: {value!r}") from exc
    if not amount.is_finite() or amount <= 0:
        raise ValidationError(f"amount must be positive, got {value!r}")
    return amount


@dataclass(frozen=True)
class ContinueConversationArgs:
    actor: str
    message: str

    @classmethod
    def parse(cls, arguments: Mapping[str, Any]) -> "ContinueConversationArgs":
        return cls(actor=_actor(arguments), message=_text(arguments, MESSAGE_KEY))


@dataclass(frozen=True)
class ChangeEmailArgs:
    actor: str
    email: str
    message: str

    @classmethod
    def parse(cls, arguments: Mapping[str, Any]) -> "ChangeEmailArgs":
        email = _text(arguments, "email").lower()
        if not EMAIL_PATTERN.match(email):
            raise ValidationError(f"not an email address: {email!r}")
        return cls(actor=_actor(arguments), email=email, message=_text(arguments, MESSAGE_KEY))


@dataclass(frozen=True)
class ChangeDisplayNameArgs:
    actor: str
    display_name: str
    message: str

    @classmethod
    def parse(cls, arguments: Mapping[str, Any]) -> "ChangeDisplayNameArgs":
        return cls(
            actor=_actor(arguments),
            display_name=_text(arguments, "display_name"),
            message=_text(arguments, MESSAGE_KEY),
        )


@dataclass(frozen=True)
class GetBalanceArgs:
    actor: str
    wallet_address: str
    message: str

    @classmethod
    def parse(cls, arguments: Mapping[str, Any]) -> "GetBalanceArgs":
        return cls(
            actor=_actor(arguments),
            wallet_address=_text(arguments, "wallet_address"),
            message=_text(arguments, MESSAGE_KEY),
        )


@dataclass(frozen=True)
class Recipient:
    name: str
    handle: str


@dataclass(frozen=True)
class SendMoneyArgs:
    actor: str
    amount: Decimal
    recipient: Recipient
    message: str

    @classmethod
    def parse(cls, arguments: Mapping[str, Any]) -> "SendMoneyArgs":
        actor = _actor(arguments)
        amount = _amount(arguments.get("amount"))
        raw_recipient = arguments.get("recipient")
        if not isinstance(raw_recipient, Mapping):
            raise ValidationError("missing required argument: recipient")
        name = _text(raw_recipient, "name")
        handle = normalize_handle(_text(raw_recipient, "phone"))
        if handle == actor:
            raise ValidationError("cannot send money to yourself")
        return cls(
            actor=actor,
            amount=amount,
            recipient=Recipient(name=name, handle=handle),
            message=_text(arguments, MESSAGE_KEY),
        )


def _message_schema(description: str) -> Dict[str, Any]:
    return {"type": "string", "description": description}


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    properties: Dict[str, Any]
    args_type: Type[Any]
    placeholders: Tuple[str, ...] = ()

    def definition(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "strict": True,
                "parameters": {
                    "type": "object",
                    "properties": self.properties,
                    "required": list(self.properties),
                    "additionalProperties": False,
                },
            },
        }


TOOL_SPECS: Tuple[ToolSpec, ...] = (
    ToolSpec(
        name=CHANGE_EMAIL,
        description="Change the email address stored for the user.",
        properties={
            "email": {"type": "string", "description": "The new email address of the user."},
            MESSAGE_KEY: _message_schema("Confirmation shown to the user once the email is changed."),
        },
        args_type=ChangeEmailArgs,
    ),
    ToolSpec(
        name=CHANGE_DISPLAY_NAME,
        description="Change the name the user prefers to be called.",
        properties={
            "display_name": {"type": "string", "description": "The new preferred name of the user."},
            MESSAGE_KEY: _message_schema("Confirmation shown to the user once the name is changed."),
        },
        args_type=ChangeDisplayNameArgs,
    ),
    ToolSpec(
        name=GET_BALANCE,
        description="Check the stablecoin balance of the user's wallet.",
        properties={
            "wallet_address": {"type": "string", "description": "The user's wallet address."},
            MESSAGE_KEY: _message_schema(
                f"Message shown with the result. Write {AMOUNT_TOKEN} where the balance goes."
            ),
        },
        args_type=GetBalanceArgs,
        placeholders=(AMOUNT_TOKEN,),
    ),
    ToolSpec(
        name=SEND_MONEY,
        description=(
            "Send stablecoins from the user's wallet to one of their contacts. "
            "Only call this when the amount, the recipient's name and phone number are all known."
        ),
        properties={
            "amount": {"type": "number", "description": "Amount of tokens to send, greater than zero."},
            "recipient": {
                "type": "object",
                "description": "Who receives the money.",
                "properties": {
                    "name": {"type": "string", "description": "The recipient's name."},
                    "phone": {
                        "type": "string",
                        "description": "The recipient's WhatsApp phone number with country code.",
                    },
                },
                "required": ["name", "phone"],
                "additionalProperties": False,
            },
            MESSAGE_KEY: _message_schema(
                f"Confirmation shown once the transfer settles. Write {AMOUNT_TOKEN} for the amount, "
                f"{NAME_TOKEN} for the recipient and {TRANSACTION_DETAILS_TOKEN} where the transaction link goes."
            ),
        },
        args_type=SendMoneyArgs,
        placeholders=(AMOUNT_TOKEN, NAME_TOKEN, TRANSACTION_DETAILS_TOKEN),
    ),
    ToolSpec(
        name=CONTINUE_CONVERSATION,
        description=(
            "Reply to the user without taking an action: answer a question, or ask for "
            "details that are still missing before another tool can be used."
        ),
        properties={
            MESSAGE_KEY: _message_schema("The message for the user."),
        },
        args_type=ContinueConversationArgs,
    ),
)


def tool_definitions() -> List[Dict[str, Any]]:
    return [spec.definition() for spec in TOOL_SPECS]


@dataclass
class ToolInvocation:
    tool_name: str
    arguments: Dict[str, Any] = field(default_factory=dict)

    @property
    def confirmation_template(self) -> str:
        return str(self.arguments.get(MESSAGE_KEY) or "")


@dataclass
class DispatchResult:
    tool_name: str
    message: str
    values: Dict[str, Any] = field(default_factory=dict)
    data: Dict[str, Any] = field(default_factory=dict)
    placeholders: Tuple[str, ...] = ()

    def render(self) -> str:
        if not self.values:
            return self.message
        return format_placeholders(self.message, self.values, allowed=self.placeholders)


Handler = Callable[[Any], Awaitable[DispatchResult]]


@dataclass
class RegisteredTool:
    spec: ToolSpec
    handler: Handler


class ToolRegistry:
    def __init__(self) -> None:
        self._tools: Dict[str, RegisteredTool] = {}

    def register(self, spec: ToolSpec, handler: Handler) -> None:
        self._tools[spec.name] = RegisteredTool(spec=spec, handler=handler)

    def get_tool(self, name: str) -> Optional[RegisteredTool]:
        return self._tools.get(name)

    def definitions(self) -> List[Dict[str, Any]]:
        return [tool.spec.definition() for tool in self._tools.values()]


def display_amount(value: Decimal) -> str:
    if value == value.quantize(Decimal("0.01")):
        return f"{value:,.2f}"
    return f"{value.normalize():,f}"


class ToolDispatcher:
    """Validates tool calls and runs them on behalf of the sending user."""

    def __init__(
        self,
        store: ProfileStore,
        wallet: Any,
        *,
        explorer_tx_url: str,
        token_decimals: int = 6,
    ) -> None:
        self.store = store
        self.wallet = wallet
        self.explorer_tx_url = explorer_tx_url
        self.token_decimals = token_decimals
        self.registry = ToolRegistry()
        self._transfer_locks = KeyedLocks()
        self._wallet_locks = KeyedLocks()
        self._register_default_tools()

    def _register_default_tools(self) -> None:
        handlers: Dict[str, Handler] = {
            CHANGE_EMAIL: self._change_email,
            CHANGE_DISPLAY_NAME: self._change_display_name,
            GET_BALANCE: self._get_balance,
            SEND_MONEY: self._send_money,
            CONTINUE_CONVERSATION: self._continue_conversation,
        }
        for spec in TOOL_SPECS:
            self.registry.register(spec, handlers[spec.name])

    async def dispatch(
        self, tool_name: str, arguments: Mapping[str, Any], actor_handle: str
    ) -> DispatchResult:
        tool = self.registry.get_tool(tool_name)
        if tool is None:
            raise ValidationError(f"unknown tool: {tool_name}")
        if not isinstance(arguments, Mapping):
            raise ValidationError(f"arguments for {tool_name} must be an object")
        payload = {**arguments, ACTOR_KEY: actor_handle}
        args = tool.spec.args_type.parse(payload)
        log.info("Dispatching %s for %s", tool_name, actor_handle)
        result = await tool.handler(args)
        result.placeholders = tool.spec.placeholders
        return result

    async def ensure_wallet(self, profile: UserProfile) -> UserProfile:
        """Give a profile a funded custodial wallet.

        A generated wallet is stored before any funding is sent, so a failed
        funding leaves its key on the profile and the next call retries the
        funding for the same address.
        """
        if profile.wallet is not None and profile.wallet_funded:
            return profile
        async with self._wallet_locks.hold(profile.handle):
            current = self.store.find_profile(profile.handle)
            if current is None:
                raise NotFoundError(f"no profile for {profile.handle}")
            if current.wallet is None:
                wallet = await self.wallet.generate_wallet()
                current = self.store.update_profile(profile.handle, wallet=wallet)
                log.info("Wallet %s stored for %s", wallet.address, profile.handle)
            if current.wallet_funded:
                return current
            await self.wallet.fund_wallet(current.wallet.address)
            log.info("Wallet %s funded for %s", current.wallet.address, profile.handle)
            return self.store.update_profile(profile.handle, wallet_funded=True)

    def _actor_profile(self, handle: str) -> UserProfile:
        profile = self.store.find_profile(handle)
        if profile is None:
            raise NotFoundError(f"no profile for {handle}")
        return profile

    def _check_precision(self, amount: Decimal) -> None:
        step = Decimal(1).scaleb(-self.token_decimals)
        if amount != amount.quantize(step):
            raise ValidationError(
                f"amount {amount} has more than {self.token_decimals} decimal places"
            )

    async def _continue_conversation(self, args: ContinueConversationArgs) -> DispatchResult:
        return DispatchResult(tool_name=CONTINUE_CONVERSATION, message=args.message)

    async def _change_email(self, args: ChangeEmailArgs) -> DispatchResult:
        self._actor_profile(args.actor)
        updated = self.store.update_profile(args.actor, email=args.email)
        return DispatchResult(tool_name=CHANGE_EMAIL, message=args.message, data={"profile": updated})

    async def _change_display_name(self, args: ChangeDisplayNameArgs) -> DispatchResult:
        self._actor_profile(args.actor)
        updated = self.store.update_profile(args.actor, display_name=args.display_name)
        return DispatchResult(
            tool_name=CHANGE_DISPLAY_NAME, message=args.message, data={"profile": updated}
        )

    async def _get_balance(self, args: GetBalanceArgs) -> DispatchResult:
        actor = self._actor_profile(args.actor)
        address = args.wallet_address
        if actor.wallet is None:
            # the model could not have known an address yet
            address = (await self.ensure_wallet(actor)).wallet.address
        elif not actor.wallet_funded:
            await self.ensure_wallet(actor)
        balance = await self.wallet.get_balance(address)
        return DispatchResult(
            tool_name=GET_BALANCE,
            message=args.message,
            values={"amount": display_amount(balance)},
            data={"balance": balance, "wallet_address": address},
        )

    async def _resolve_recipient(self, recipient: Recipient) -> UserProfile:
        profile = self.store.find_profile(recipient.handle)
        if profile is None:
            log.info("First contact with %s, registering as %s", recipient.handle, recipient.name)
            profile = self.store.create_profile(recipient.handle, display_name=recipient.name)
        return await self.ensure_wallet(profile)

    async def _send_money(self, args: SendMoneyArgs) -> DispatchResult:
        self._check_precision(args.amount)
        sender = await self.ensure_wallet(self._actor_profile(args.actor))
        attempt_id = uuid.uuid4().hex
        async with self._transfer_locks.hold(args.actor):
            balance = await self.wallet.get_balance(sender.wallet.address)
            if balance < args.amount:
                log.info(
                    "Transfer %s rejected: %s holds %s, asked for %s",
                    attempt_id,
                    args.actor,
                    balance,
                    args.amount,
                )
                raise InsufficientFunds(balance, args.amount)
            recipient = await self._resolve_recipient(args.recipient)
            # A recipient wallet funded above stays in place if the transfer fails.
            try:
                receipt = await self.wallet.transfer(
                    sender.wallet,
                    recipient.wallet.address,
                    args.amount,
                    attempt_id=attempt_id,
                )
            except (InsufficientFunds, TransferFailed):
                raise
            except ChainError as exc:
                raise TransferFailed(str(exc)) from exc
        try:
            remaining: Optional[Decimal] = await self.wallet.get_balance(sender.wallet.address)
        except ChainError as exc:
            log.warning("Post-transfer balance unavailable for %s: %s", args.actor, exc)
            remaining = None
        return DispatchResult(
            tool_name=SEND_MONEY,
            message=args.message,
            values={
                "amount": display_amount(args.amount),
                "name": args.recipient.name,
                "transaction_details": transaction_details(receipt.tx_hash, self.explorer_tx_url),
            },
            data={
                "transaction": receipt,
                "amount": args.amount,
                "recipient_name": args.recipient.name,
                "recipient_handle": args.recipient.handle,
                "balance": remaining,
                "attempt_id": attempt_id,
            },
        )
