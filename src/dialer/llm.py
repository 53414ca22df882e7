"""
Chat completion client (OpenAI-compatible API, Groq or OpenAI).

Provides:
- Startup model validation
- Streaming completions
- The restock sales-call system prompt and greeting instruction
"""

from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

import httpx
import structlog
from openai import AsyncOpenAI

from src.dialer.config import get_config
from src.dialer.session import ConversationMessage, SessionFlags

logger = structlog.get_logger(__name__)

GROQ_BASE_URL = "https://api.groq.com/openai/v1"
OPENAI_BASE_URL = "https://api.openai.com/v1"

FALLBACK_GREETING = (
    "Hi, I'm {agent} calling from {company}, customer sales department. "
    "Can I know if I am speaking with the manager{manager}?"
)


@dataclass(frozen=True)
class CompletionOptions:
    """Generation parameters; part of the response cache key."""
    model: str = ""
    temperature: float = 0.3
    max_tokens: int = 100

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


class CompletionError(Exception):
    """Raised when the completion backend fails."""
    pass


def get_system_prompt(config: Optional[Any] = None) -> str:
    """
    Get the system prompt for the restock sales agent.

    SYSTEM_PROMPT in the environment replaces it entirely.
    """
    if config is None:
        config = get_config()

    if config.system_prompt:
        return config.system_prompt

    return f"""You are {config.agent_name}, a friendly and professional sales representative from {config.company_name}.

ROLE:
- You call hotel managers to remind them about restocking and take new orders conversationally.
- Be calm, friendly, helpful and never pushy. Recommend related or seasonal products only when it fits naturally.

UNITS:
- We operate in the United States. Always use Imperial units (oz, lbs, fl oz, gallons, inches).

CALL FLOW:
- Confirm you are speaking with the manager by name. If someone else answers, ask for the manager; if the manager is unavailable, say you will call back later and end politely.
- Remind them about their regular order and ask whether they want to reorder the same.
- NEVER assume quantities. Always ask how many cases, and state the minimum order and the price per case.
- Confirm every line exactly like this: "I'll add [X] cases of [product] at $[price] per case."
- After each confirmed line, ask if they need anything else.
- Upsell at most once every two or three confirmed products, e.g. "A lot of hotels who order that also go for [related product]."

PRICING GUIDELINES:
- Bagels/Pastries: $23-27 per case (minimum 2 cases)
- Beverages: $18-22 per case (minimum 3 cases)
- Coffee: $26-30 per case (minimum 2 cases)
- Dairy products: $20-25 per case (minimum 2 cases)
- Condiments/Jams: $15-20 per case (minimum 2 cases)
- Bulk discounts: 5+ cases get $2-3 off per case
- You may offer up to 10% off the total order if asked for a discount, never more.

ENDING THE CALL:
- When the customer is done ("that's all", "nothing else", "I'm good"), close with one of these exact phrases:
  "Have a great day!", "Have a wonderful day!", "Thank you for your time and have a great day!", "Thanks for your time, have a wonderful day!"
- These phrases end the call automatically, so only use them when the conversation is complete.

STYLE:
- This is a phone call: keep replies to one or two short sentences.
- No lists, no mention of carts, order systems or technical processes.
- Use natural softeners like "Sounds good!" or "That makes sense."

EXAMPLE:
- Customer: "I need water" -> "Perfect! How many cases of bottled water (16.9 fl oz) would you like? We recommend a minimum of 3 cases at $20 per case."
- Customer: "5 cases" -> "Excellent! I'll add 5 cases of bottled water at $20 per case to your order. Anything else?"
- Customer: "That's all" -> "Wonderful! Your order is all set. Thank you for your time and have a great day!\""""


def get_greeting_instruction(manager_name: str = "", config: Optional[Any] = None) -> str:
    """Instruction that makes the model produce the opening line."""
    if config is None:
        config = get_config()
    manager = manager_name.strip() or "of this hotel"
    return (
        "The call just connected. Say EXACTLY this greeting and nothing more: "
        f"\"Hi, I'm {config.agent_name} calling from {config.company_name}, customer sales department. "
        f"Can I know if I am speaking with the manager {manager}?\" "
        "Do not add any other questions or sentences."
    )


def fallback_greeting(manager_name: str = "", config: Optional[Any] = None) -> str:
    if config is None:
        config = get_config()
    manager = f" {manager_name.strip()}" if manager_name.strip() else ""
    return FALLBACK_GREETING.format(agent=config.agent_name, company=config.company_name, manager=manager)


def flag_hints(flags: SessionFlags) -> Optional[str]:
    """Advisory conversation state passed to the model as extra system context."""
    hints = []
    if flags.reorder_confirmed:
        hints.append("The customer already confirmed their regular reorder.")
    if flags.upsell_attempted:
        hints.append("You already suggested an extra product; do not upsell again right away.")
    if flags.customer_done:
        hints.append("The customer said they are done ordering; wrap up and close the call.")
    return " ".join(hints) or None


def build_messages(
    system_prompt: str,
    transcript: Sequence[ConversationMessage],
    user_message: Optional[str] = None,
    extra_context: Optional[str] = None,
) -> List[Dict[str, str]]:
    """Assemble the chat messages for a completion request."""
    messages = [{"role": "system", "content": system_prompt}]
    if extra_context:
        messages.append({"role": "system", "content": extra_context})
    messages.extend(m.to_dict() for m in transcript)
    if user_message is not None:
        messages.append({"role": "user", "content": user_message})
    return messages


def render_messages(messages: Sequence[Dict[str, str]]) -> str:
    """Flatten messages into a single string (response cache input)."""
    return "\n".join(f"{m['role']}: {m['content']}" for m in messages)


async def validate_model(api_key: str, model_name: str, base_url: str) -> bool:
    """
    Validate that the configured model exists.

    Calls GET {base_url}/models to check.

    Raises:
        SystemExit: If the model doesn't exist (fail fast)
    """
    logger.info("Validating completion model", model=model_name, base_url=base_url)

    async with httpx.AsyncClient() as client:
        try:
            response = await client.get(
                f"{base_url}/models",
                headers={"Authorization": f"Bearer {api_key}"},
                timeout=10.0,
            )
        except httpx.RequestError as e:
            logger.error("Failed to connect to completion API", error=str(e))
            raise SystemExit(
                f"Failed to connect to completion API: {e}\n"
                "Check your network connection and API key."
            )

    if response.status_code != 200:
        logger.error(
            "Failed to fetch models",
            status_code=response.status_code,
            response=response.text[:200],
        )
        raise SystemExit(
            f"Failed to validate model. API returned status {response.status_code}. "
            "Check your API key."
        )

    model_ids = [m.get("id") for m in response.json().get("data", [])]
    if model_name not in model_ids:
        available = ", ".join(sorted(i for i in model_ids if i)[:10])
        logger.error("Model not found", requested_model=model_name, available_models=available)
        raise SystemExit(
            f"Model '{model_name}' not found in available models.\n"
            f"Available models include: {available}"
        )

    logger.info("Completion model validated successfully", model=model_name)
    return True


class CompletionClient(ABC):
    """Streaming chat completion capability."""

    @abstractmethod
    def complete(
        self,
        messages: Sequence[Dict[str, str]],
        options: CompletionOptions,
    ) -> AsyncIterator[str]:
        """Yield text deltas as they are generated."""
        ...


class OpenAICompletionClient(CompletionClient):
    """
    Completion client over the OpenAI-compatible streaming API.

    LLM_PROVIDER=groq points the same client at Groq.
    """

    def __init__(self, config: Optional[Any] = None):
        if config is None:
            config = get_config()

        self.config = config
        if config.llm_provider == "groq":
            self.base_url = GROQ_BASE_URL
            self.api_key = config.groq_api_key
        else:
            self.base_url = OPENAI_BASE_URL
            self.api_key = config.openai_api_key
        self.model = config.completion_model
        self._client = AsyncOpenAI(api_key=self.api_key, base_url=self.base_url)

    def default_options(self) -> CompletionOptions:
        return CompletionOptions(
            model=self.model,
            temperature=self.config.completion_temperature,
            max_tokens=self.config.completion_max_tokens,
        )

    async def validate_model(self) -> bool:
        return await validate_model(self.api_key, self.model, self.base_url)

    async def complete(
        self,
        messages: Sequence[Dict[str, str]],
        options: CompletionOptions,
    ) -> AsyncIterator[str]:
        try:
            stream = await self._client.chat.completions.create(
                model=options.model or self.model,
                messages=list(messages),
                stream=True,
                max_tokens=options.max_tokens,
                temperature=options.temperature,
            )
            async for chunk in stream:
                if chunk.choices and chunk.choices[0].delta.content:
                    yield chunk.choices[0].delta.content
        except Exception as e:
            logger.error("LLM generation failed", error_type=type(e).__name__, error=str(e))
            raise CompletionError(str(e)) from e


# Singleton instance
_client_instance: Optional[OpenAICompletionClient] = None


def get_completion_client() -> OpenAICompletionClient:
    """Get or create the completion client singleton."""
    global _client_instance

    if _client_instance is None:
        _client_instance = OpenAICompletionClient()

    return _client_instance


async def initialize_llm() -> OpenAICompletionClient:
    """
    Initialize and validate the completion client at startup.
    """
    client = get_completion_client()
    await client.validate_model()
    return client
