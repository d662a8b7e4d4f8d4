"""Short natural-language summaries of preference statistics."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

from decision_memory.config import (
    get_llm_provider,
    get_narrative_model_name,
    get_openai_api_key,
    get_xai_api_key,
    get_xai_base_url,
    is_langfuse_enabled,
    is_llm_configured,
)
from decision_memory.services.prompts import PROFILE_SYSTEM_PROMPT, PROFILE_USER_PROMPT
from decision_memory.services.tracing import record_output, traced


logger = logging.getLogger("decision_memory.narrative")

NARRATIVE_TIMEOUT_SECONDS = 60


class NarrativeError(RuntimeError):
    """Text generation failed; the caller keeps a statistics-only profile."""


def format_stats_for_llm(stats: Dict[str, Any]) -> str:
    return PROFILE_USER_PROMPT.format(stats_json=json.dumps(stats, sort_keys=True, default=str))


def _chat_client():
    if is_langfuse_enabled():
        from langfuse.openai import OpenAI
    else:
        from openai import OpenAI

    if get_llm_provider() == "xai":
        return OpenAI(api_key=(get_xai_api_key() or "").strip(), base_url=get_xai_base_url())
    return OpenAI(api_key=(get_openai_api_key() or "").strip())


def generate_profile_narrative(stats: Dict[str, Any]) -> Optional[str]:
    """Summarise ``stats`` as a few bullet points.

    Returns None when no LLM provider is configured.

    Raises:
        NarrativeError: when the provider call fails or returns nothing.
    """
    if not is_llm_configured():
        logger.info("[narrative.skip] provider=%s not configured", get_llm_provider())
        return None

    model = get_narrative_model_name()
    prompt = format_stats_for_llm(stats)
    with traced("profile_narrative", kind="generation", model=model, input=prompt[:2000]) as generation:
        try:
            resp = _chat_client().chat.completions.create(
                model=model,
                messages=[
                    {"role": "system", "content": PROFILE_SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                timeout=NARRATIVE_TIMEOUT_SECONDS,
            )
            text = (resp.choices[0].message.content or "").strip()
        except Exception as exc:
            logger.warning("[narrative.failed] provider=%s model=%s error=%s", get_llm_provider(), model, exc)
            raise NarrativeError(str(exc)) from exc
        if not text:
            raise NarrativeError("empty narrative")
        record_output(generation, text)
        logger.info("[narrative.ok] provider=%s model=%s chars=%s", get_llm_provider(), model, len(text))
        return text
