# backend/governor/services/openai_service.py
"""
Synthesis / judge / embedding collaborators.

The governor only depends on the BattleCollaborator and Embedder shapes
below. The OpenAI implementations produce a battle transcript in one chat
completion, judge it with a JSON-mode completion, and embed gate text.
Every call reports its token usage so the pipeline can write it to the
budget ledger.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

import openai
from openai import AsyncOpenAI

from governor.config import settings
from governor.errors import ProviderError
from governor.services.budget_ledger import ProviderUsage
from governor.services.referee import JudgeScores
from governor.utils.circuit_breaker import get_breaker
from governor.utils.logger import logger
from governor.utils.retry_logic import retry_async

# Transport-level failures worth retrying
TRANSIENT_ERRORS = (
    openai.APIConnectionError,
    openai.APITimeoutError,
    openai.RateLimitError,
    openai.InternalServerError,
)


# =============================================================================
# Contract
# =============================================================================

@dataclass
class SynthesisOptions:
    max_turns: int = 15
    temperature: float = 0.7
    texture_frequency: float = 0.3
    model: Optional[str] = None


@dataclass
class SynthesisResult:
    transcript: str
    turns: int
    usage: ProviderUsage


@dataclass
class JudgeResult:
    scores: JudgeScores
    model: str
    usage: ProviderUsage


@dataclass
class PersonaDraft:
    name: str
    persona_type: str
    description: str
    system_prompt: str
    conflict_state: Dict[str, Any] = field(default_factory=dict)
    usage: Optional[ProviderUsage] = None


class BattleCollaborator(Protocol):
    async def synthesize(self, persona: Dict[str, Any], options: SynthesisOptions) -> SynthesisResult: ...

    async def judge(self, transcript: str, model: str) -> JudgeResult: ...

    async def synthesize_persona(
        self, raw_objection: str, base_persona: Optional[Dict[str, Any]] = None
    ) -> PersonaDraft: ...


class Embedder(Protocol):
    model: str

    async def embed(self, texts: List[str]) -> List[List[float]]: ...


# =============================================================================
# OpenAI client
# =============================================================================

class OpenAIService:
    # Class-level shared async client for connection pooling
    _async_client: Optional[AsyncOpenAI] = None

    @classmethod
    def get_async_client(cls) -> AsyncOpenAI:
        if cls._async_client is None:
            if not settings.OPENAI_API_KEY:
                raise ProviderError("OPENAI_API_KEY is not configured")
            cls._async_client = AsyncOpenAI(api_key=settings.OPENAI_API_KEY)
        return cls._async_client

    @classmethod
    async def close_client(cls) -> None:
        if cls._async_client is not None:
            await cls._async_client.close()
            cls._async_client = None


def _usage(model: str, response: Any) -> ProviderUsage:
    u = getattr(response, "usage", None)
    return ProviderUsage(
        provider="openai",
        model=model,
        input_tokens=int(getattr(u, "prompt_tokens", 0) or 0),
        output_tokens=int(getattr(u, "completion_tokens", 0) or 0),
    )


def _count_turns(transcript: str) -> int:
    return sum(1 for line in transcript.splitlines() if line.strip().lower().startswith(("closer:", "seller:")))


SYNTHESIS_PROMPT = """You write realistic phone-call transcripts between a real-estate acquisitions
rep ("Closer") and a property owner ("Seller"). Play the seller exactly as described:

{persona}

Write at most {max_turns} turns, one per line, each prefixed "Closer:" or "Seller:".
Mark delivery inline for both speakers: [pause], [long pause], [breath], [sigh], [laughs],
and natural fillers (um, uh, you know). Use such markers in roughly {texture_pct}% of lines.
Output the transcript only."""

JUDGE_PROMPT = """You are the referee for a simulated acquisitions call. Score the Closer.
Return a JSON object with keys: refereeScore, mathDefenseScore, humanityScore,
successScore (each 0-100), verbalYesToPrice (bool: the seller verbally agreed to a price),
documentStatus ("pending" | "sent" | "completed": state of the purchase agreement),
feedback (string), winningRebuttal (string or null)."""

PERSONA_PROMPT = """Design a property-seller persona built around this objection:

"{objection}"

{base}
Return a JSON object with keys: name, personaType, description, systemPrompt,
conflictState {{objection, emotionalState, underlyingConcern, blockers (list),
resolutionCriteria (list)}}."""


class OpenAIBattleCollaborator:
    def __init__(
        self,
        closer_model: Optional[str] = None,
        persona_model: Optional[str] = None,
    ):
        self.closer_model = closer_model or settings.CLOSER_MODEL
        self.persona_model = persona_model or settings.PERSONA_MODEL
        self._breaker = get_breaker("openai_chat")

    @retry_async(max_retries=2, exceptions=TRANSIENT_ERRORS)
    async def _complete(self, **kwargs) -> Any:
        client = OpenAIService.get_async_client()
        return await client.chat.completions.create(**kwargs)

    async def _chat(self, **kwargs) -> Any:
        try:
            return await self._breaker.call(self._complete, **kwargs)
        except ProviderError:
            raise
        except openai.OpenAIError as e:
            raise ProviderError(f"OpenAI request failed: {e}") from e

    @staticmethod
    def _json_content(response: Any) -> Dict[str, Any]:
        content = (response.choices[0].message.content or "").strip()
        try:
            return json.loads(content)
        except json.JSONDecodeError as e:
            raise ProviderError(f"Model returned invalid JSON: {e}") from e

    async def synthesize(self, persona: Dict[str, Any], options: SynthesisOptions) -> SynthesisResult:
        model = options.model or self.closer_model
        persona_text = "\n".join(
            f"{k}: {v}" for k, v in persona.items()
            if k in ("name", "persona_type", "description", "system_prompt") and v
        )
        conflict = (persona.get("behavior_params") or {}).get("conflict_state")
        if conflict:
            persona_text += f"\nconflict_state: {json.dumps(conflict)}"

        response = await self._chat(
            model=model,
            temperature=options.temperature,
            messages=[
                {
                    "role": "system",
                    "content": SYNTHESIS_PROMPT.format(
                        persona=persona_text,
                        max_turns=options.max_turns,
                        texture_pct=int(round(options.texture_frequency * 100)),
                    ),
                },
                {"role": "user", "content": "Begin the call."},
            ],
        )
        transcript = (response.choices[0].message.content or "").strip()
        return SynthesisResult(transcript=transcript, turns=_count_turns(transcript), usage=_usage(model, response))

    async def judge(self, transcript: str, model: str) -> JudgeResult:
        response = await self._chat(
            model=model,
            temperature=0.0,
            response_format={"type": "json_object"},
            messages=[
                {"role": "system", "content": JUDGE_PROMPT},
                {"role": "user", "content": transcript},
            ],
        )
        scores = JudgeScores.from_dict(self._json_content(response))
        return JudgeResult(scores=scores, model=model, usage=_usage(model, response))

    async def synthesize_persona(
        self, raw_objection: str, base_persona: Optional[Dict[str, Any]] = None
    ) -> PersonaDraft:
        base = ""
        if base_persona:
            base = f"Start from this base persona: {base_persona.get('name')} - {base_persona.get('description') or ''}\n"

        response = await self._chat(
            model=self.persona_model,
            temperature=0.9,
            response_format={"type": "json_object"},
            messages=[
                {"role": "system", "content": PERSONA_PROMPT.format(objection=raw_objection, base=base)},
            ],
        )
        data = self._json_content(response)
        conflict = data.get("conflictState") or data.get("conflict_state") or {}
        conflict.setdefault("objection", raw_objection)

        return PersonaDraft(
            name=str(data.get("name") or "Scenario Seller")[:255],
            persona_type=str(data.get("personaType") or data.get("persona_type") or "scenario"),
            description=str(data.get("description") or raw_objection),
            system_prompt=str(data.get("systemPrompt") or data.get("system_prompt") or ""),
            conflict_state=conflict,
            usage=_usage(self.persona_model, response),
        )


class OpenAIEmbedder:
    def __init__(self, model: Optional[str] = None):
        self.model = model or settings.EMBEDDING_MODEL
        self.last_usage: Optional[ProviderUsage] = None
        self._breaker = get_breaker("openai_embeddings")

    @retry_async(max_retries=2, exceptions=TRANSIENT_ERRORS)
    async def _create(self, texts: List[str]) -> Any:
        client = OpenAIService.get_async_client()
        return await client.embeddings.create(model=self.model, input=texts)

    async def embed(self, texts: List[str]) -> List[List[float]]:
        try:
            response = await self._breaker.call(self._create, texts)
        except ProviderError:
            raise
        except openai.OpenAIError as e:
            raise ProviderError(f"Embedding request failed: {e}") from e

        self.last_usage = ProviderUsage(
            provider="openai",
            model=self.model,
            input_tokens=int(getattr(response.usage, "prompt_tokens", 0) or 0),
        )
        vectors = [list(d.embedding) for d in sorted(response.data, key=lambda d: d.index)]
        logger.debug(f"[Embedder] {len(vectors)} vectors from {self.model}")
        return vectors
