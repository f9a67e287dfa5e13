#!/usr/bin/env python3
"""Async OpenAI helper providing `chat_completion` with retry, content filter handling,
normalized content extraction and optional post-processing. Uses Azure OpenAI when
AZURE_ENDPOINT is configured and the public OpenAI API otherwise. Returns `None` on
exhausted retries or non-filter failures."""
from __future__ import annotations
from typing import List, Dict, Any, Optional, Callable
from asyncio import sleep

from openai import AsyncAzureOpenAI, AsyncOpenAI, OpenAIError

from config import config, get_logger
from errors import ContentFilterError

logger = get_logger("llm_client")

TRUNCATED_PLACEHOLDER = "[Truncated output: no content returned]"

_client: Any = None


def _get_client() -> Optional[Any]:
    """Instantiate and cache the async client if configuration is present."""
    global _client
    if _client is not None:
        return _client
    if not config.OPENAI_API_KEY:
        logger.debug("Missing OPENAI_API_KEY; client will not initialize")
        return None
    if config.AZURE_ENDPOINT:
        if not (config.OPENAI_API_VERSION and config.DEPLOYMENT_NAME):
            logger.debug("Missing Azure OpenAI config; client will not initialize")
            return None
        endpoint = (
            f"https://{config.AZURE_ENDPOINT}" if not str(config.AZURE_ENDPOINT).startswith("http") else config.AZURE_ENDPOINT
        )
        _client = AsyncAzureOpenAI(
            api_key=config.OPENAI_API_KEY,
            api_version=config.OPENAI_API_VERSION,
            azure_endpoint=endpoint,
        )
    else:
        _client = AsyncOpenAI(api_key=config.OPENAI_API_KEY)
    return _client


def _model_name() -> str:
    return config.DEPLOYMENT_NAME if config.AZURE_ENDPOINT else config.OPENAI_MODEL


def _filter_error(error_obj: Any) -> Optional[ContentFilterError]:
    if not isinstance(error_obj, dict):
        return None
    code = error_obj.get("code")
    inner = error_obj.get("innererror")
    inner_code = inner.get("code") if isinstance(inner, dict) else None
    if code == "content_filter" or inner_code == "ResponsibleAIPolicyViolation":
        return ContentFilterError(message=error_obj.get("message", "Content filtered"), details=error_obj)
    return None


def _extract_text(choice: Any) -> str:
    message = getattr(choice, "message", {}) or {}
    if isinstance(message, dict) and message.get("refusal"):
        return ""
    content = getattr(message, "content", None) if not isinstance(message, dict) else message.get("content")
    if isinstance(content, str):
        return content.strip()
    if isinstance(content, list):
        texts: List[str] = []
        for part in content:
            if isinstance(part, dict):
                ptype = part.get("type")
                txt = part.get("text")
                if isinstance(txt, str) and txt.strip():
                    texts.append(txt.strip())
                elif ptype not in ("text", "output_text", None):
                    logger.debug("Ignoring non-text part type=%s keys=%s", ptype, list(part.keys()))
        return "\n".join(texts).strip()
    return ""


async def chat_completion(
    messages: List[Dict[str, str]] = None,
    *,
    purpose: str = "generic",
    retries: Optional[int] = None,
    postprocess: Optional[Callable[[str], str]] = None,
    client_override: Optional[Any] = None,
    **params: Any,
) -> Optional[str]:
    """Execute a chat completion. Raises `ContentFilterError` on policy violations.

    Extra keyword arguments (e.g. temperature, max_tokens) are passed to the API as-is.
    """
    if messages is None:
        logger.error("chat_completion called without messages list")
        return None

    client = client_override or _get_client()
    if client is None:
        logger.warning("OpenAI client unavailable; skipping %s", purpose)
        return None

    remaining = retries if retries is not None else config.SUMMARIZER_MAX_RETRIES
    attempt = 0

    while attempt <= remaining:
        request: Dict[str, Any] = {
            "model": _model_name(),
            "messages": messages,
        }
        request.update(params)
        try:
            resp = await client.chat.completions.create(**request)
            choices = getattr(resp, "choices", None) or []
            if not choices:
                logger.error("No choices in %s response: %s", purpose, resp)
                return None
            fragments: List[str] = []
            refusal_detected = False
            for ch in choices:
                msg_obj = getattr(ch, "message", {}) or {}
                refusal_flag = msg_obj.get("refusal") if isinstance(msg_obj, dict) else getattr(msg_obj, "refusal", None)
                if refusal_flag:
                    refusal_detected = True
                    logger.warning("Refusal detected in %s response: %s", purpose, refusal_flag)
                txt = _extract_text(ch)
                if txt:
                    fragments.append(txt)
            if refusal_detected and not fragments:
                logger.warning("All choices refused for %s; returning None", purpose)
                return None
            raw = "\n".join(fragments).strip()
            if not raw:
                finish_reasons = {getattr(c, "finish_reason", None) for c in choices if getattr(c, "finish_reason", None)}
                if "length" in finish_reasons:
                    logger.warning("Truncated output with empty content (%s); returning placeholder", purpose)
                    raw = TRUNCATED_PLACEHOLDER
                else:
                    logger.error("Empty content in %s response despite choices (finish_reasons=%s)", purpose, finish_reasons)
                    return None
            return postprocess(raw) if postprocess else raw
        except ContentFilterError:
            raise
        except Exception as e:
            attempt += 1
            body = getattr(e, "body", {}) or {}
            filtered = _filter_error(body.get("error") if isinstance(body, dict) else None)
            if filtered is not None:
                raise filtered
            kind = "transient OpenAI error" if isinstance(e, OpenAIError) else "unexpected error"
            if attempt > remaining:
                logger.error("%s request failed after %d retries (%s): %s", purpose, remaining, kind, e)
                return None
            delay = config.SUMMARIZER_RETRY_DELAY_BASE * (2 ** (attempt - 1))
            logger.warning("%s %s: %s. Backoff %ss (attempt %d/%d)", purpose, kind, e, delay, attempt, remaining)
            await sleep(delay)

    return None


__all__ = ["chat_completion", "TRUNCATED_PLACEHOLDER"]
