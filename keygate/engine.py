"""Completion engine adapters and OpenAI request/response translation.

The gateway speaks the OpenAI chat completions protocol to its clients and
drives the Claude CLI underneath.  Engines only see a flattened prompt, a
Claude model alias and the OAuth token of the calling key; everything
OpenAI-shaped is produced here.

Behaviour hierarchy:

1. If ``KEYGATE_OFFLINE_ENGINE`` is set, :class:`OfflineEngine` returns a
   deterministic placeholder without spawning anything.
2. Otherwise :class:`ClaudeCliEngine` runs ``claude -p`` with stream-json
   output and the OAuth token passed only to the child's environment.

Engine failures surface as :class:`keygate.errors.CompletionError` so the
HTTP layer has a single error path.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import math
import os
import secrets
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Union

import structlog
from pydantic import BaseModel, ConfigDict, Field

from keygate.errors import CompletionError

logger = structlog.get_logger(__name__)

DEFAULT_MODEL = "sonnet"
HAIKU_MODEL = "claude-3-5-haiku-20241022"

MODEL_MAP: Dict[str, str] = {
    "gpt-4": "opus",
    "gpt-4-turbo": "sonnet",
    "gpt-3.5-turbo": HAIKU_MODEL,
    "opus": "opus",
    "sonnet": "sonnet",
    "haiku": HAIKU_MODEL,
}

# Static catalogue advertised on /v1/models.
AVAILABLE_MODELS: List[Dict[str, Any]] = [
    {"id": "gpt-4", "object": "model", "created": 1687882411, "owned_by": "openai", "permission": [], "root": "gpt-4", "parent": None},
    {"id": "gpt-3.5-turbo", "object": "model", "created": 1677610602, "owned_by": "openai", "permission": [], "root": "gpt-3.5-turbo", "parent": None},
    {"id": "sonnet", "object": "model", "created": 1677610602, "owned_by": "anthropic", "permission": [], "root": "claude-3-sonnet", "parent": None},
    {"id": "opus", "object": "model", "created": 1677610602, "owned_by": "anthropic", "permission": [], "root": "claude-3-opus", "parent": None},
    {"id": "haiku", "object": "model", "created": 1677610602, "owned_by": "anthropic", "permission": [], "root": "claude-3-haiku", "parent": None},
]

STREAM_SPLIT_THRESHOLD = 50
STREAM_GROUP_LENGTH = 30
# stream-json emits one event per line; assistant messages can be large.
STREAM_LINE_LIMIT = 16 * 1024 * 1024


class ChatMessage(BaseModel):
    role: str
    content: Union[str, List[Dict[str, Any]], None] = None

    model_config = ConfigDict(extra="ignore")

    def text(self) -> str:
        if self.content is None:
            return ""
        if isinstance(self.content, str):
            return self.content
        # Content-part arrays: keep the text parts only.
        return "".join(
            str(part.get("text", "")) for part in self.content if part.get("type", "text") == "text"
        )


class ChatCompletionRequest(BaseModel):
    model: str = DEFAULT_MODEL
    messages: List[ChatMessage] = Field(default_factory=list)
    stream: bool = False
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None

    model_config = ConfigDict(extra="ignore")


@dataclass(frozen=True)
class EngineChunk:
    """One item of an engine stream.

    Text chunks carry ``text``; the final chunk has ``done`` set and may
    carry the reported cost.
    """

    text: str = ""
    done: bool = False
    cost_usd: Optional[float] = None


class CompletionEngine:
    """Interface implemented by completion backends."""

    name = "engine"

    def stream(self, prompt: str, model: str, oauth_token: str) -> AsyncIterator[EngineChunk]:
        raise NotImplementedError


class OfflineEngine(CompletionEngine):
    """Deterministic engine used for local development and tests."""

    name = "offline"

    async def stream(self, prompt: str, model: str, oauth_token: str) -> AsyncIterator[EngineChunk]:
        digest = hashlib.sha1(prompt.encode("utf-8")).hexdigest()[:12]
        yield EngineChunk(text=f"Offline response ({digest}) generated by the {model} model placeholder.")
        yield EngineChunk(done=True, cost_usd=0.0)


class ClaudeCliEngine(CompletionEngine):
    """Runs the ``claude`` CLI in print mode and parses its stream-json output."""

    name = "claude-cli"

    def __init__(self, executable: str = "claude") -> None:
        self.executable = executable

    def _command(self, prompt: str, model: str) -> List[str]:
        return [
            self.executable,
            "-p",
            prompt,
            "--model",
            model,
            "--output-format",
            "stream-json",
            "--verbose",
        ]

    async def stream(self, prompt: str, model: str, oauth_token: str) -> AsyncIterator[EngineChunk]:
        env = dict(os.environ)
        env["CLAUDE_CODE_OAUTH_TOKEN"] = oauth_token
        try:
            process = await asyncio.create_subprocess_exec(
                *self._command(prompt, model),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                limit=STREAM_LINE_LIMIT,
            )
        except OSError as exc:
            logger.error("engine.spawn_failed", executable=self.executable, error=str(exc))
            raise CompletionError(f"Failed to start completion engine: {exc}") from exc

        assert process.stdout is not None and process.stderr is not None
        stderr_task = asyncio.ensure_future(process.stderr.read())
        cost: Optional[float] = None
        failure: Optional[str] = None
        try:
            async for raw_line in process.stdout:
                line = raw_line.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                try:
                    event = json.loads(line)
                except ValueError:
                    logger.debug("engine.unparsed_line", length=len(line))
                    continue
                if not isinstance(event, dict):
                    continue
                kind = event.get("type")
                if kind == "assistant":
                    for text in _assistant_text_blocks(event):
                        yield EngineChunk(text=text)
                elif kind == "result":
                    if event.get("is_error") or event.get("subtype") not in (None, "success"):
                        failure = str(event.get("result") or event.get("subtype") or "engine error")
                    else:
                        cost = event.get("total_cost_usd")

            returncode = await process.wait()
            stderr = (await stderr_task).decode("utf-8", errors="replace").strip()
            if returncode != 0 or failure:
                message = failure or stderr[-500:] or f"exit code {returncode}"
                logger.error("engine.completion_failed", returncode=returncode, message=message)
                raise CompletionError(f"Completion engine failed: {message}")
            yield EngineChunk(done=True, cost_usd=cost)
        finally:
            if process.returncode is None:
                # Consumer went away mid-stream.
                process.kill()
                await process.wait()
            if not stderr_task.done():
                stderr_task.cancel()


def _assistant_text_blocks(event: Dict[str, Any]) -> List[str]:
    message = event.get("message")
    if not isinstance(message, dict):
        return []
    content = message.get("content")
    if not isinstance(content, list):
        return []
    return [
        block["text"]
        for block in content
        if isinstance(block, dict) and block.get("type") == "text" and isinstance(block.get("text"), str)
    ]


def build_engine(offline: bool = False, executable: str = "claude") -> CompletionEngine:
    if offline:
        return OfflineEngine()
    return ClaudeCliEngine(executable)


# ---------------------------------------------------------------------------
# OpenAI translation
# ---------------------------------------------------------------------------

def format_messages(messages: List[ChatMessage]) -> str:
    """Flatten chat messages into a single prompt for the engine."""

    lines = []
    for message in messages:
        content = message.text()
        if message.role == "system":
            lines.append(f"System: {content}")
        elif message.role == "user":
            lines.append(f"Human: {content}")
        elif message.role == "assistant":
            lines.append(f"Assistant: {content}")
        else:
            lines.append(content)
    return "\n\n".join(lines)


def resolve_model(model: Optional[str]) -> str:
    return MODEL_MAP.get(model or "", DEFAULT_MODEL)


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / 4)


def generate_completion_id() -> str:
    return f"chatcmpl-{int(time.time() * 1000)}-{secrets.token_hex(5)[:9]}"


def split_for_streaming(text: str) -> List[str]:
    """Split long text into roughly 30 character word groups.

    Text up to 50 characters is returned as a single fragment.  Every group
    but the last carries a trailing space so the fragments concatenate back
    to the original words.
    """

    if len(text) <= STREAM_SPLIT_THRESHOLD:
        return [text]
    fragments: List[str] = []
    current = ""
    for word in text.split(" "):
        if current and len(current) + len(word) > STREAM_GROUP_LENGTH:
            fragments.append(current + " ")
            current = word
        else:
            current = f"{current} {word}" if current else word
    if current:
        fragments.append(current)
    return fragments


async def complete(engine: CompletionEngine, request: ChatCompletionRequest, oauth_token: str) -> Dict[str, Any]:
    """Run a non-streaming completion and return a ``chat.completion`` payload."""

    prompt = format_messages(request.messages)
    model = resolve_model(request.model)
    parts: List[str] = []
    cost: Optional[float] = None
    async for chunk in engine.stream(prompt, model, oauth_token):
        if chunk.done:
            cost = chunk.cost_usd
        elif chunk.text:
            parts.append(chunk.text)
    response_text = "".join(parts)

    prompt_tokens = estimate_tokens(prompt)
    completion_tokens = estimate_tokens(response_text)
    logger.info("engine.completion", engine=engine.name, model=model, cost_usd=cost)
    return {
        "id": generate_completion_id(),
        "object": "chat.completion",
        "created": int(time.time()),
        "model": request.model,
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": response_text},
                "finish_reason": "stop",
            }
        ],
        "usage": {
            "prompt_tokens": prompt_tokens,
            "completion_tokens": completion_tokens,
            "total_tokens": prompt_tokens + completion_tokens,
        },
    }


async def stream_chunks(
    engine: CompletionEngine, request: ChatCompletionRequest, oauth_token: str
) -> AsyncIterator[Dict[str, Any]]:
    """Yield ``chat.completion.chunk`` payloads for a streaming completion."""

    prompt = format_messages(request.messages)
    model = resolve_model(request.model)
    completion_id = generate_completion_id()
    created = int(time.time())

    def chunk(delta: Dict[str, Any], finish_reason: Optional[str] = None) -> Dict[str, Any]:
        return {
            "id": completion_id,
            "object": "chat.completion.chunk",
            "created": created,
            "model": request.model,
            "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
        }

    yield chunk({"role": "assistant"})
    async for item in engine.stream(prompt, model, oauth_token):
        if item.done or not item.text:
            continue
        for fragment in split_for_streaming(item.text):
            yield chunk({"content": fragment})
    yield chunk({}, "stop")


__all__ = [
    "AVAILABLE_MODELS",
    "ChatCompletionRequest",
    "ChatMessage",
    "ClaudeCliEngine",
    "CompletionEngine",
    "EngineChunk",
    "OfflineEngine",
    "build_engine",
    "complete",
    "format_messages",
    "resolve_model",
    "split_for_streaming",
    "stream_chunks",
]
