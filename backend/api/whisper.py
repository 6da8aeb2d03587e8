"""
OpenAI Whisper integration for audio transcription.
French is the default language; the caller may pass any ISO-639-1 hint.
"""

import time
import logging
from typing import Any, Dict, Optional

from .llm import get_openai_client, get_langfuse, log_tool_run
from .logging_config import ExternalServiceError

logger = logging.getLogger(__name__)

WHISPER_MODEL = "whisper-1"
DEFAULT_LANGUAGE = "fr"


def transcribe_audio(audio_bytes: bytes,
                     filename: str,
                     content_type: Optional[str] = None,
                     language: Optional[str] = DEFAULT_LANGUAGE,
                     user_id: Optional[str] = None) -> Dict[str, Any]:
    """
    Transcribe audio using OpenAI Whisper API.

    Args:
        audio_bytes: Raw audio file contents
        filename: Original file name; Whisper uses its extension to detect the format
        content_type: MIME type reported by the client
        language: Language hint, French by default

    Returns:
        Dict with text, language and duration (seconds, None if not reported)
    """
    start = time.time()
    langfuse = get_langfuse()
    trace = langfuse.trace(name="whisper_transcription", metadata={"user_id": user_id}) if langfuse else None

    file_arg = (filename, audio_bytes, content_type) if content_type else (filename, audio_bytes)
    try:
        transcript = get_openai_client().audio.transcriptions.create(
            model=WHISPER_MODEL,
            file=file_arg,
            language=language,
            response_format="verbose_json",
        )
    except ExternalServiceError:
        raise
    except Exception as e:
        latency = int((time.time() - start) * 1000)
        if trace:
            trace.update(level="ERROR", metadata={"error": str(e)})
        log_tool_run("whisper_transcription", WHISPER_MODEL, latency, success=False, error=str(e),
                     metadata={"user_id": user_id})
        raise ExternalServiceError("Whisper", str(e), getattr(e, "status_code", None))

    latency = int((time.time() - start) * 1000)
    result = {
        "text": transcript.text,
        "language": getattr(transcript, "language", None) or language,
        "duration": getattr(transcript, "duration", None),
    }
    if trace:
        trace.update(output=result["text"], metadata={"latency_ms": latency, "duration": result["duration"]})
    log_tool_run("whisper_transcription", WHISPER_MODEL, latency, success=True, metadata={"user_id": user_id})
    logger.info(f"Audio transcribed successfully: {len(result['text'])} chars", extra={"user_id": user_id})
    return result
