"""
server.py — Jia Voice Companion · FastAPI Relay
===============================================
Keeps the provider key off the device.  The conversation loop posts its
history (system instruction first) and an optional camera frame here; the
relay forwards it to Groq and streams the reply back as server-sent events
in the OpenAI delta shape the device already parses.

Endpoints
---------
  POST /api/chat-stream   {messages, base64Image?} → text/event-stream
  POST /api/vision        one-shot scene description → {"text": ...}
  GET  /health            Service liveness
  GET  /config            Current runtime config
  PUT  /config            Deep-merge patch (persisted when JIA_CONFIG is set)

Stream framing
--------------
    data: {"choices":[{"delta":{"content":"..."}}]}\\n\\n
    ...
    data: [DONE]\\n\\n

A provider failure mid-stream ends the body without the terminator.
"""

from __future__ import annotations

import json
import logging
import os
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from groq import APIError, AsyncGroq
from pydantic import BaseModel, Field, ValidationError

from config import VoiceEngineConfig

load_dotenv()

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.DEBUG if os.getenv("JIA_DEBUG") else logging.INFO,
    format="%(asctime)s.%(msecs)03d [%(levelname)s] %(name)s – %(message)s",
    datefmt="%H:%M:%S",
)
log = logging.getLogger("jia.server")

# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------
CONFIG_PATH = os.getenv("JIA_CONFIG")

_config = VoiceEngineConfig.load(CONFIG_PATH)


def get_config() -> VoiceEngineConfig:
    return _config


# One provider client (and connection pool) for the life of the process.
_groq: Optional[AsyncGroq] = None


def get_groq_client() -> AsyncGroq:
    """Shared provider client, created on first use; overridden in tests."""
    global _groq
    if _groq is None:
        api_key = os.getenv("GROQ_API_KEY")
        if not api_key:
            log.error("event=groq_key_missing")
            raise HTTPException(status_code=500, detail="GROQ_API_KEY not configured on the relay.")
        _groq = AsyncGroq(api_key=api_key)
        log.info("event=groq_client_ready")
    return _groq


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class ChatMessage(BaseModel):
    role: str
    content: str


class ChatStreamRequest(BaseModel):
    messages: Optional[list[ChatMessage]] = None
    base64Image: Optional[str] = None


class VisionRequest(BaseModel):
    base64Image: Optional[str] = None
    prompt: Optional[str] = None
    mode: str = Field(default="general", description="Named prompt from vision_prompts")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _image_part(b64: str) -> dict:
    return {"type": "image_url", "image_url": {"url": f"data:image/jpeg;base64,{b64}"}}


def build_provider_messages(messages: list[ChatMessage], base64_image: Optional[str]) -> list[dict]:
    """Provider message list; the image rides on the last user message."""
    out: list[dict] = [m.model_dump() for m in messages]
    if not base64_image:
        return out
    for msg in reversed(out):
        if msg["role"] == "user":
            msg["content"] = [{"type": "text", "text": msg["content"]}, _image_part(base64_image)]
            break
    return out


def _sse(content: str) -> str:
    return f"data: {json.dumps({'choices': [{'delta': {'content': content}}]})}\n\n"


def _sampling_kwargs(cfg: VoiceEngineConfig) -> dict:
    kwargs: dict = {"model": cfg.groq.model, "max_tokens": cfg.groq.max_tokens}
    if cfg.groq.temperature is not None:
        kwargs["temperature"] = cfg.groq.temperature
    if cfg.groq.top_p is not None:
        kwargs["top_p"] = cfg.groq.top_p
    return kwargs


async def _relay_stream(stream) -> AsyncIterator[str]:
    """Re-frame provider chunks as SSE.

    The terminator is sent only when the provider finished.  A failure after
    the headers went out closes the body without it, which the device reads
    as a broken stream and abandons the partial reply.
    """
    chars = 0
    try:
        async for chunk in stream:
            if not chunk.choices:
                continue
            content = chunk.choices[0].delta.content
            if content:
                chars += len(content)
                yield _sse(content)
    except APIError as exc:
        log.error("event=groq_stream_error chars=%d error=%s", chars, exc)
        return
    log.info("event=chat_stream_end chars=%d", chars)
    yield "data: [DONE]\n\n"


# ---------------------------------------------------------------------------
# FastAPI app
# ---------------------------------------------------------------------------

@asynccontextmanager
async def _lifespan(app: FastAPI):
    global _groq
    log.info("event=server_start model=%s config=%s", _config.groq.model, CONFIG_PATH or "defaults")
    yield
    if _groq is not None:
        await _groq.close()
        _groq = None
    log.info("event=server_stopped")


app = FastAPI(
    title="Jia Voice Companion",
    version="1.0.0",
    description="Chat and vision relay for the Jia conversation loop",
    lifespan=_lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@app.post("/api/chat-stream")
async def chat_stream(
    body: ChatStreamRequest,
    cfg: VoiceEngineConfig = Depends(get_config),
    client: AsyncGroq = Depends(get_groq_client),
) -> StreamingResponse:
    if not body.messages:
        raise HTTPException(status_code=400, detail="messages is required.")

    messages = build_provider_messages(body.messages, body.base64Image)
    log.info(
        "event=chat_stream_start messages=%d image=%s model=%s",
        len(messages), bool(body.base64Image), cfg.groq.model,
    )
    try:
        stream = await client.chat.completions.create(
            messages=messages,
            stream=True,
            **_sampling_kwargs(cfg),
        )
    except APIError as exc:
        log.error("event=groq_request_failed error=%s", exc)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=f"Provider error: {exc}") from exc

    return StreamingResponse(
        _relay_stream(stream),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache"},
    )


@app.post("/api/vision")
async def vision(
    body: VisionRequest,
    cfg: VoiceEngineConfig = Depends(get_config),
    client: AsyncGroq = Depends(get_groq_client),
) -> JSONResponse:
    """One-shot description of a single frame."""
    if not body.base64Image:
        raise HTTPException(status_code=400, detail="base64Image is required.")
    prompt = body.prompt or cfg.vision_prompts.get(body.mode)
    if not prompt:
        raise HTTPException(status_code=400, detail=f"Unknown vision mode '{body.mode}'.")

    messages = [{
        "role": "user",
        "content": [{"type": "text", "text": prompt}, _image_part(body.base64Image)],
    }]
    log.info("event=vision_request mode=%s custom_prompt=%s", body.mode, bool(body.prompt))
    try:
        completion = await client.chat.completions.create(messages=messages, **_sampling_kwargs(cfg))
    except APIError as exc:
        log.error("event=vision_failed error=%s", exc)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=f"Provider error: {exc}") from exc

    text = completion.choices[0].message.content or ""
    return JSONResponse({"text": text.strip()})


@app.get("/health")
async def health() -> JSONResponse:
    """Liveness probe."""
    return JSONResponse({
        "status": "ok",
        "model": _config.groq.model,
        "groq_key": bool(os.getenv("GROQ_API_KEY")),
    })


@app.get("/config")
async def read_config(cfg: VoiceEngineConfig = Depends(get_config)) -> JSONResponse:
    return JSONResponse(cfg.model_dump())


@app.put("/config")
async def update_config(patch: dict) -> JSONResponse:
    """Deep-merge a partial config and persist it when JIA_CONFIG is set."""
    global _config
    try:
        updated = _config.merge_patch(patch)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=json.loads(exc.json())) from exc
    _config = updated
    if CONFIG_PATH:
        _config.save(CONFIG_PATH)
    log.info("event=config_updated keys=%s", ",".join(sorted(patch)))
    return JSONResponse(_config.model_dump())


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=os.getenv("JIA_HOST", "127.0.0.1"), port=int(os.getenv("JIA_PORT", "8000")))
