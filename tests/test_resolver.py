"""
Tests for the IntentResolver.

Covers:
- Onboarding structured output parsing and schema violations
- Operational tool calls and plain-text replies
- Completion failures surfacing as ResolutionError
"""

import httpx
import openai
import pytest

from core.errors import ResolutionError, SchemaViolation
from core.history import ConversationMessage
from core.profiles import Mode, UserProfile, WalletRef
from core.resolver import ONBOARDING_SCHEMA, IntentResolver, OnboardingIntent, OperationalIntent
from core.tools import GET_BALANCE, SEND_MONEY, tool_definitions

from fakes import completion, onboarding_completion, openai_client, tool_call, tool_completion

NEW_USER = UserProfile(handle="1@c.us")
KNOWN_USER = UserProfile(
    handle="1@c.us",
    display_name="Ana",
    email="ana@example.com",
    wallet=WalletRef(address="0xABC", secret="s"),
)
HISTORY = [
    ConversationMessage(timestamp=1, body="hola", from_user=True),
    ConversationMessage(timestamp=2, body="hi! what's your email?", from_user=False),
]


def resolver_with(prompts, *responses):
    client = openai_client(*responses)
    return IntentResolver(client, prompts, model="gpt-test"), client


class TestOnboarding:
    @pytest.mark.asyncio
    async def test_parses_structured_fields(self, prompts):
        resolver, client = resolver_with(
            prompts, onboarding_completion(email="ana@example.com", display_name="", reply="And your name?")
        )
        intent = await resolver.resolve_onboarding(NEW_USER, HISTORY, "ana@example.com")

        assert intent == OnboardingIntent(email="ana@example.com", display_name="", reply="And your name?")
        assert intent.profile_updates() == {"email": "ana@example.com"}

        kwargs = client.chat.completions.create.await_args.kwargs
        assert kwargs["model"] == "gpt-test"
        assert kwargs["response_format"] == ONBOARDING_SCHEMA
        assert "tools" not in kwargs
        messages = kwargs["messages"]
        assert messages[0]["role"] == "system"
        assert messages[1:3] == [
            {"role": "user", "content": "hola"},
            {"role": "assistant", "content": "hi! what's your email?"},
        ]
        assert messages[-1] == {"role": "user", "content": "ana@example.com"}

    @pytest.mark.asyncio
    async def test_non_json_is_schema_violation(self, prompts):
        resolver, _ = resolver_with(prompts, completion(content="sure, tell me your email"))
        with pytest.raises(SchemaViolation):
            await resolver.resolve_onboarding(NEW_USER, [], "hi")

    @pytest.mark.asyncio
    async def test_missing_field_is_schema_violation(self, prompts):
        resolver, _ = resolver_with(prompts, completion(content='{"email": "", "continue_conversation": "hi"}'))
        with pytest.raises(SchemaViolation):
            await resolver.resolve_onboarding(NEW_USER, [], "hi")

    @pytest.mark.asyncio
    async def test_refusal_is_schema_violation(self, prompts):
        resolver, _ = resolver_with(prompts, completion(refusal="I can't help with that"))
        with pytest.raises(SchemaViolation):
            await resolver.resolve_onboarding(NEW_USER, [], "hi")

    @pytest.mark.asyncio
    async def test_resolve_routes_by_mode(self, prompts):
        resolver, _ = resolver_with(prompts, onboarding_completion(reply="Hi! What's your name?"))
        intent = await resolver.resolve(Mode.ONBOARDING, NEW_USER, [], "hi")
        assert isinstance(intent, OnboardingIntent)
        assert intent.profile_updates() == {}


class TestOperational:
    @pytest.mark.asyncio
    async def test_tool_call(self, prompts):
        arguments = {"wallet_address": "0xABC", "message": "You have %amount% MXNB"}
        resolver, client = resolver_with(prompts, tool_completion(GET_BALANCE, arguments))

        intent = await resolver.resolve_operational(KNOWN_USER, HISTORY, "what's my balance")

        assert intent.text is None
        assert intent.invocation.tool_name == GET_BALANCE
        assert intent.invocation.arguments == arguments
        assert intent.invocation.confirmation_template == "You have %amount% MXNB"
        kwargs = client.chat.completions.create.await_args.kwargs
        assert kwargs["tool_choice"] == "auto"
        assert kwargs["tools"] == tool_definitions()
        assert "0xABC" in kwargs["messages"][0]["content"]

    @pytest.mark.asyncio
    async def test_plain_text(self, prompts):
        resolver, _ = resolver_with(prompts, completion(content="  MXNB is a peso stablecoin.  "))
        intent = await resolver.resolve(Mode.OPERATIONAL, KNOWN_USER, [], "what is mxnb?")
        assert intent == OperationalIntent(text="MXNB is a peso stablecoin.")

    @pytest.mark.asyncio
    async def test_first_of_several_calls_used(self, prompts):
        calls = [
            tool_call(GET_BALANCE, {"wallet_address": "0xABC", "message": "%amount%"}, "a"),
            tool_call(SEND_MONEY, {"amount": 1}, "b"),
        ]
        resolver, _ = resolver_with(prompts, completion(tool_calls=calls))
        intent = await resolver.resolve_operational(KNOWN_USER, [], "balance")
        assert intent.invocation.tool_name == GET_BALANCE

    @pytest.mark.asyncio
    async def test_malformed_arguments(self, prompts):
        resolver, _ = resolver_with(prompts, tool_completion(SEND_MONEY, "{not json"))
        with pytest.raises(ResolutionError):
            await resolver.resolve_operational(KNOWN_USER, [], "send 5")

    @pytest.mark.asyncio
    async def test_empty_reply(self, prompts):
        resolver, _ = resolver_with(prompts, completion(content=""))
        with pytest.raises(ResolutionError):
            await resolver.resolve_operational(KNOWN_USER, [], "?")

    @pytest.mark.asyncio
    async def test_api_failure_is_resolution_error(self, prompts):
        request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
        resolver, _ = resolver_with(prompts, openai.APIConnectionError(request=request))
        with pytest.raises(ResolutionError):
            await resolver.resolve_operational(KNOWN_USER, [], "hi")
