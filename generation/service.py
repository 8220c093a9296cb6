from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from typing import Any
from typing import Awaitable
from typing import Callable
from typing import Generic
from typing import TypeVar

from pydantic import BaseModel
from pydantic import ValidationError

from config.defaults import AI_MAX_TOKENS
from config.defaults import AI_RETRY_ATTEMPTS
from config.defaults import AI_RETRY_BACKOFF_SECONDS
from config.defaults import AI_TEMPERATURE
from config.defaults import DEFAULT_AI_MODEL
from generation.dna import StoryWordBank
from generation.dna import generate_story_dna
from generation.prompts import LAYER1_USER_MESSAGE
from generation.prompts import LAYER2_USER_MESSAGE
from generation.prompts import LAYER3_USER_MESSAGE
from generation.prompts import build_layer1_prompt
from generation.prompts import build_layer2_prompt
from generation.prompts import build_layer3_prompt
from generation.retry import linear_backoff
from generation.retry import with_retry
from generation.schema import Layer1Response
from generation.schema import Layer2Response
from generation.schema import Layer3Response
from generation.schema import describe_validation_error
from generation.schema import normalize_layer1
from generation.schema import normalize_layer2
from generation.schema import normalize_layer3
from story.models import AIStoryContext

M = TypeVar("M", bound=BaseModel)


class GenerationError(RuntimeError):
    pass


@dataclass(slots=True)
class GenerationResult(Generic[M]):
    success: bool
    data: M | None = None
    error: str | None = None
    usage: dict[str, int] | None = None
    context: AIStoryContext | None = None


def _usage_dict(resp: Any) -> dict[str, int] | None:
    usage = getattr(resp, "usage", None)
    if usage is None:
        return None
    return {
        "prompt_tokens": int(getattr(usage, "prompt_tokens", 0) or 0),
        "completion_tokens": int(getattr(usage, "completion_tokens", 0) or 0),
        "total_tokens": int(getattr(usage, "total_tokens", 0) or 0),
    }


class IncrementalStoryGenerator:
    """Generates AI stories one layer at a time through an OpenAI-compatible client.

    Every layer is validated against its pydantic schema; a response that fails
    validation counts as a failed attempt and is retried like a transport error.
    Reward numbers never come from the model (see generation.builder).
    """

    def __init__(
        self,
        *,
        client,
        model: str = DEFAULT_AI_MODEL,
        temperature: float = AI_TEMPERATURE,
        max_tokens: int = AI_MAX_TOKENS,
        retry_attempts: int = AI_RETRY_ATTEMPTS,
        retry_backoff_seconds: float = AI_RETRY_BACKOFF_SECONDS,
        word_bank: StoryWordBank | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.client = client
        self.model = (model or DEFAULT_AI_MODEL).strip()
        self.temperature = float(temperature)
        self.max_tokens = int(max_tokens or AI_MAX_TOKENS)
        self.retry_attempts = max(1, int(retry_attempts or 1))
        self.retry_backoff_seconds = float(retry_backoff_seconds or 0.0)
        self.word_bank = word_bank or StoryWordBank()
        self._sleep = sleep

    @property
    def enabled(self) -> bool:
        return self.client is not None

    async def generate(self, system_prompt: str, user_prompt: str, schema: type[M]) -> GenerationResult[M]:
        """Single attempt. Never raises for provider, JSON or schema problems."""
        if self.client is None:
            return GenerationResult(success=False, error="AI client not configured")
        try:
            resp = await asyncio.to_thread(
                self.client.chat.completions.create,
                model=self.model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                response_format={"type": "json_object"},
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            )
        except Exception as e:
            print(f"[AIStory] Generation failed: {e}")
            return GenerationResult(success=False, error=str(e))

        content = ""
        if getattr(resp, "choices", None):
            content = (resp.choices[0].message.content or "").strip()
        if not content:
            return GenerationResult(success=False, error="Empty response from AI")

        try:
            parsed = json.loads(content)
        except ValueError:
            return GenerationResult(success=False, error=f"Failed to parse JSON: {content[:100]}...")

        try:
            data = schema.model_validate(parsed)
        except ValidationError as e:
            return GenerationResult(success=False, error=f"Invalid structure: {describe_validation_error(e)}")

        usage = _usage_dict(resp)
        print(f"[AIStory] Generated {schema.__name__} - {(usage or {}).get('total_tokens', 0)} tokens")
        return GenerationResult(success=True, data=data, usage=usage)

    async def _generate_with_retry(self, system_prompt: str, user_prompt: str, schema: type[M]) -> GenerationResult[M]:
        async def _attempt() -> GenerationResult[M]:
            res = await self.generate(system_prompt, user_prompt, schema)
            if not res.success:
                raise GenerationError(res.error or "Generation failed")
            return res

        try:
            return await with_retry(
                _attempt,
                attempts=self.retry_attempts,
                backoff=linear_backoff(self.retry_backoff_seconds),
                sleep=self._sleep,
            )
        except GenerationError as e:
            return GenerationResult(success=False, error=str(e))

    async def generate_layer1(self, discord_user_id: str | None = None) -> GenerationResult[Layer1Response]:
        dna = generate_story_dna()
        nouns, verbs = self.word_bank.random_words()
        facts = self.word_bank.user_facts(discord_user_id)
        print(f'[AIStory] Story DNA - setting: "{dna.setting}", twist: "{dna.twist}", role: "{dna.role}"')
        if nouns or verbs:
            print(f"[AIStory] Seed words: {', '.join(nouns)} / {', '.join(verbs)}")

        result = await self._generate_with_retry(
            build_layer1_prompt(dna, nouns, verbs, facts), LAYER1_USER_MESSAGE, Layer1Response
        )
        if not result.success or result.data is None:
            return result

        data = normalize_layer1(result.data)
        result.data = data
        result.context = AIStoryContext(
            title=data.title,
            emoji=data.emoji,
            intro_narrative=data.intro.narrative,
            decision1=data.decision1.to_context(),
            path_so_far="",
        )
        return result

    async def generate_layer2(
        self,
        context: AIStoryContext,
        choice: str,
        was_success: bool,
    ) -> GenerationResult[Layer2Response]:
        prompt_context = AIStoryContext.from_dict({**context.to_dict(), "path_so_far": choice})
        result = await self._generate_with_retry(
            build_layer2_prompt(prompt_context, was_success), LAYER2_USER_MESSAGE, Layer2Response
        )
        if not result.success or result.data is None:
            return result

        data = normalize_layer2(result.data)
        result.data = data
        result.context = AIStoryContext.from_dict(
            {
                **prompt_context.to_dict(),
                "path_so_far": f"{choice}{'S' if was_success else 'F'}",
                "first_outcome_narrative": data.outcome_narrative,
                "decision2": data.decision2.to_context(),
            }
        )
        return result

    async def generate_layer3(
        self,
        context: AIStoryContext,
        choice: str,
        was_success: bool,
    ) -> GenerationResult[Layer3Response]:
        """`context` is the layer 2 context (path like `XS`); `choice` is the second pick."""
        prompt_context = AIStoryContext.from_dict(
            {**context.to_dict(), "path_so_far": f"{context.path_so_far}{choice}"}
        )
        result = await self._generate_with_retry(
            build_layer3_prompt(prompt_context, was_success), LAYER3_USER_MESSAGE, Layer3Response
        )
        if not result.success or result.data is None:
            return result
        result.data = normalize_layer3(result.data)
        return result
