import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Union

from openai import AsyncOpenAI, OpenAIError

from .errors import ResolutionError, SchemaViolation
from .history import ConversationMessage, to_context
from .profiles import Mode, UserProfile
from .prompts import PromptConfig
from .tools import ToolInvocation, tool_definitions

log = logging.getLogger(__name__)

ONBOARDING_FIELDS = ("email", "display_name", "continue_conversation")

ONBOARDING_SCHEMA: Dict[str, Any] = {
    "type": "json_schema",
    "json_schema": {
        "name": "onboarding_details",
        "strict": True,
        "schema": {
            "type": "object",
            "properties": {
                "email": {
                    "type": "string",
                    "description": "The user's email address, or an empty string if not given yet.",
                },
                "display_name": {
                    "type": "string",
                    "description": "The name the user prefers, or an empty string if not given yet.",
                },
                "continue_conversation": {
                    "type": "string",
                    "description": "The message for the user, asking for anything still missing.",
                },
            },
            "required": list(ONBOARDING_FIELDS),
            "additionalProperties": False,
        },
    },
}


@dataclass
class OnboardingIntent:
    email: str
    display_name: str
    reply: str

    def profile_updates(self) -> Dict[str, str]:
        updates = {}
        if self.email.strip():
            updates["email"] = self.email.strip()
        if self.display_name.strip():
            updates["display_name"] = self.display_name.strip()
        return updates


@dataclass
class OperationalIntent:
    text: Optional[str] = None
    invocation: Optional[ToolInvocation] = None


ResolvedIntent = Union[OnboardingIntent, OperationalIntent]


class IntentResolver:
    """Turns a chat message into either a structured profile update or a tool call."""

    def __init__(
        self,
        client: AsyncOpenAI,
        prompts: PromptConfig,
        *,
        model: str = "gpt-4.1",
        tools: Optional[List[Dict[str, Any]]] = None,
        temperature: float = 0.4,
        max_tokens: int = 1024,
    ) -> None:
        self.client = client
        self.prompts = prompts
        self.model = model
        self.tools = tools if tools is not None else tool_definitions()
        self.temperature = temperature
        self.max_tokens = max_tokens

    async def resolve(
        self,
        mode: Mode,
        profile: UserProfile,
        history: Sequence[ConversationMessage],
        message: str,
    ) -> ResolvedIntent:
        if mode is Mode.ONBOARDING:
            return await self.resolve_onboarding(profile, history, message)
        return await self.resolve_operational(profile, history, message)

    def _messages(
        self,
        mode: Mode,
        profile: UserProfile,
        history: Sequence[ConversationMessage],
        message: str,
    ) -> List[Dict[str, str]]:
        payload = [{"role": "system", "content": self.prompts.system_prompt(mode, profile)}]
        payload.extend(to_context(history))
        payload.append({"role": "user", "content": message})
        return payload

    async def _complete(self, **kwargs: Any) -> Any:
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                temperature=self.temperature,
                max_tokens=self.max_tokens,
                **kwargs,
            )
        except OpenAIError as exc:
            log.warning("Completion request failed: %s", exc)
            raise ResolutionError("completion service unavailable") from exc
        if not getattr(response, "choices", None):
            raise ResolutionError("completion returned no choices")
        return response.choices[0].message

    async def resolve_onboarding(
        self,
        profile: UserProfile,
        history: Sequence[ConversationMessage],
        message: str,
    ) -> OnboardingIntent:
        reply = await self._complete(
            messages=self._messages(Mode.ONBOARDING, profile, history, message),
            response_format=ONBOARDING_SCHEMA,
        )
        if getattr(reply, "refusal", None):
            raise SchemaViolation(f"model refused onboarding output: {reply.refusal}")
        try:
            data = json.loads(reply.content or "")
        except json.JSONDecodeError as exc:
            raise SchemaViolation("onboarding output is not JSON") from exc
        if not isinstance(data, dict):
            raise SchemaViolation("onboarding output is not an object")
        bad = [key for key in ONBOARDING_FIELDS if not isinstance(data.get(key), str)]
        if bad:
            raise SchemaViolation(f"onboarding output lacks fields: {', '.join(bad)}")
        if not data["continue_conversation"].strip():
            raise SchemaViolation("onboarding output has an empty reply")
        return OnboardingIntent(
            email=data["email"],
            display_name=data["display_name"],
            reply=data["continue_conversation"].strip(),
        )

    async def resolve_operational(
        self,
        profile: UserProfile,
        history: Sequence[ConversationMessage],
        message: str,
    ) -> OperationalIntent:
        reply = await self._complete(
            messages=self._messages(Mode.OPERATIONAL, profile, history, message),
            tools=self.tools,
            tool_choice="auto",
            parallel_tool_calls=False,
        )
        calls = getattr(reply, "tool_calls", None) or []
        if not calls:
            text = (reply.content or "").strip()
            if not text:
                raise ResolutionError("completion returned neither text nor a tool call")
            return OperationalIntent(text=text)
        if len(calls) > 1:
            log.warning("Model returned %d tool calls, using the first", len(calls))
        call = calls[0]
        try:
            arguments = json.loads(call.function.arguments or "{}")
        except json.JSONDecodeError as exc:
            raise ResolutionError(f"malformed arguments for {call.function.name}") from exc
        if not isinstance(arguments, dict):
            raise ResolutionError(f"arguments for {call.function.name} are not an object")
        log.info("Resolved tool call %s", call.function.name)
        return OperationalIntent(invocation=ToolInvocation(tool_name=call.function.name, arguments=arguments))
