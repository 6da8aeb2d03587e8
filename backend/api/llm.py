import os
import time
import logging
from typing import Any, Dict, Iterator, List, Optional, Tuple

from langfuse import Langfuse
from openai import OpenAI

from .logging_config import ExternalServiceError

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-5-mini"

_client: Optional[OpenAI] = None
_langfuse: Optional[Langfuse] = None


def get_openai_client() -> OpenAI:
    global _client
    if _client is None:
        api_key = os.environ.get("OPENAI_API_KEY")
        if not api_key:
            raise ExternalServiceError("OpenAI", "OPENAI_API_KEY not configured")
        _client = OpenAI(api_key=api_key)
    return _client


def get_langfuse() -> Optional[Langfuse]:
    """Langfuse tracer, or None when tracing is not configured"""
    global _langfuse
    if _langfuse is None and os.environ.get("LANGFUSE_PUBLIC_KEY"):
        _langfuse = Langfuse(
            public_key=os.environ.get("LANGFUSE_PUBLIC_KEY"),
            secret_key=os.environ.get("LANGFUSE_SECRET_KEY"),
            host=os.environ.get("LANGFUSE_HOST", "https://cloud.langfuse.com")
        )
    return _langfuse


def _usage_dict(usage) -> Dict[str, int]:
    if usage is None:
        return {"input_tokens": 0, "output_tokens": 0}
    return {
        "input_tokens": getattr(usage, "prompt_tokens", 0) or 0,
        "output_tokens": getattr(usage, "completion_tokens", 0) or 0,
    }


def chat_completion(messages: List[Dict[str, str]],
                    model: str = DEFAULT_MODEL,
                    max_completion_tokens: int = 8000,
                    json_mode: bool = False,
                    metadata: Optional[Dict[str, Any]] = None) -> Tuple[str, Dict[str, int]]:
    """Single chat completion; returns (content, usage)"""
    start = time.time()
    langfuse = get_langfuse()
    trace = langfuse.trace(name="chat_completion", metadata=metadata or {}) if langfuse else None

    kwargs = {
        "model": model,
        "messages": messages,
        "max_completion_tokens": max_completion_tokens,
    }
    if json_mode:
        kwargs["response_format"] = {"type": "json_object"}

    try:
        resp = get_openai_client().chat.completions.create(**kwargs)
    except ExternalServiceError:
        raise
    except Exception as e:
        latency = int((time.time() - start) * 1000)
        if trace:
            trace.update(level="ERROR", metadata={**(metadata or {}), "error": str(e)})
        log_tool_run("chat_completion", model, latency, success=False, error=str(e), metadata=metadata)
        raise ExternalServiceError("OpenAI", str(e), getattr(e, "status_code", None))

    latency = int((time.time() - start) * 1000)
    usage = _usage_dict(resp.usage)
    choice = resp.choices[0] if resp.choices else None
    content = choice.message.content if choice and choice.message else None

    if trace:
        trace.update(
            output=content,
            metadata={**(metadata or {}), "model": model, "latency_ms": latency, "usage": usage}
        )
    log_tool_run("chat_completion", model, latency, success=bool(content), usage=usage, metadata=metadata)

    if not content:
        finish_reason = choice.finish_reason if choice else None
        raise ExternalServiceError("OpenAI", f"empty content (finish reason: {finish_reason})")
    return content, usage


def stream_chat_completion(messages: List[Dict[str, str]],
                           model: str = DEFAULT_MODEL,
                           max_completion_tokens: int = 15000,
                           metadata: Optional[Dict[str, Any]] = None) -> Iterator[Tuple[str, Any]]:
    """
    Stream a chat completion.

    Yields ("content", text) for each delta and a final ("usage", dict) once the
    provider reports token counts.
    """
    start = time.time()
    langfuse = get_langfuse()
    trace = langfuse.trace(name="stream_chat_completion", metadata=metadata or {}) if langfuse else None
    usage = {"input_tokens": 0, "output_tokens": 0}

    try:
        stream = get_openai_client().chat.completions.create(
            model=model,
            messages=messages,
            max_completion_tokens=max_completion_tokens,
            stream=True,
            stream_options={"include_usage": True},
        )
        for chunk in stream:
            if chunk.choices:
                delta = chunk.choices[0].delta
                if delta is not None and delta.content:
                    yield "content", delta.content
            if getattr(chunk, "usage", None):
                usage = _usage_dict(chunk.usage)
    except ExternalServiceError:
        raise
    except Exception as e:
        latency = int((time.time() - start) * 1000)
        if trace:
            trace.update(level="ERROR", metadata={**(metadata or {}), "error": str(e)})
        log_tool_run("stream_chat_completion", model, latency, success=False, error=str(e), metadata=metadata)
        raise ExternalServiceError("OpenAI", str(e), getattr(e, "status_code", None))

    latency = int((time.time() - start) * 1000)
    if trace:
        trace.update(metadata={**(metadata or {}), "model": model, "latency_ms": latency, "usage": usage})
    log_tool_run("stream_chat_completion", model, latency, success=True, usage=usage, metadata=metadata)
    yield "usage", usage


def log_tool_run(tool_name, model, latency_ms, success, error=None, usage=None, metadata=None):
    logger.info(
        f"AI call {tool_name} {'succeeded' if success else 'failed'}",
        extra={
            "endpoint": tool_name,
            "user_id": (metadata or {}).get("user_id"),
            "execution_time": latency_ms,
            "model": model,
            "usage": usage,
            "error": error,
        }
    )
