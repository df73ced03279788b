"""
HTTP interface: chat streaming over SSE plus profile, memory, ledger and conversation endpoints.

Run with: uvicorn analysis_room.api:create_app --factory
"""

import asyncio
from typing import Any, AsyncIterator, Dict, Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, Response, StreamingResponse
from pydantic import BaseModel, Field, field_validator

from .models.core import ExpertId
from .services.context_assembler import speaker_name
from .services.personas import EXPERTS, default_voice_settings, get_voice
from .services.profile_service import MIN_RULE_SOURCE_LENGTH, ProfileServiceError
from .services.service_registry import ServiceRegistry, build_registry
from .services.speech import AVAILABLE_VOICES
from .services.streaming import KEEPALIVE_COMMENT, StreamEvent
from .utils.config import config
from .utils.health_check import get_health_status
from .utils.logging_config import get_logger
from .utils.timestamp_utils import to_iso

logger = get_logger(__name__)

SSE_HEADERS = {'Cache-Control': 'no-cache', 'Connection': 'keep-alive', 'X-Accel-Buffering': 'no'}
INVALID_REQUEST = {'message': 'Invalid request'}


class ChatRequest(BaseModel):
    message: str
    conversationId: Optional[int] = None
    imageBase64: Optional[str] = None
    audioBase64: Optional[str] = None
    sessionId: Optional[str] = None

    @field_validator('message')
    @classmethod
    def message_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError('message must not be blank')
        return value


class TTSRequest(BaseModel):
    text: str = Field(min_length=1)
    role: ExpertId
    conversationId: Optional[int] = None


class SaveRuleRequest(BaseModel):
    text: str


class VoiceSettingsRequest(BaseModel):
    voiceSettings: Dict[ExpertId, str]


class UserProfileRequest(BaseModel):
    coreProfile: Optional[Dict[str, Any]] = None
    livingPromptSummary: Optional[str] = None


class MemoryRequest(BaseModel):
    text: str = Field(min_length=1)
    category: str = ExpertId.ONTOLOGICAL.value


async def sse_stream(request: Request, events: AsyncIterator[StreamEvent], keepalive_seconds: float) -> AsyncIterator[str]:
    """Adapt a pipeline event stream to SSE.

    A keep-alive comment is sent whenever no event arrives within
    keepalive_seconds. The pending read is never cancelled by a keep-alive,
    only by client disconnect, after which the pipeline is closed so no
    further experts run.
    """
    iterator = events.__aiter__()
    pending: Optional[asyncio.Future] = None
    try:
        while True:
            if await request.is_disconnected():
                logger.info('Client disconnected; stopping round')
                break
            if pending is None:
                pending = asyncio.ensure_future(iterator.__anext__())
            done, _ = await asyncio.wait({pending}, timeout=keepalive_seconds)
            if not done:
                yield KEEPALIVE_COMMENT
                continue
            finished, pending = pending, None
            try:
                event = finished.result()
            except StopAsyncIteration:
                break
            yield event.to_sse()
    finally:
        if pending is not None:
            pending.cancel()
            await asyncio.gather(pending, return_exceptions=True)
        await iterator.aclose()


def create_app(registry: Optional[ServiceRegistry] = None) -> FastAPI:
    """Create the FastAPI application.

    Args:
        registry: Service graph (optional, built from the global config if None)
    """
    registry = registry or build_registry(config)
    app = FastAPI(title='Analysis Room', version='1.0.0')
    app.state.registry = registry

    if registry.config.api.cors_origins:
        app.add_middleware(CORSMiddleware,
                           allow_origins=registry.config.api.cors_origins,
                           allow_credentials=True,
                           allow_methods=['*'],
                           allow_headers=['*'])

    @app.exception_handler(RequestValidationError)
    async def invalid_request(request: Request, exc: RequestValidationError) -> JSONResponse:
        logger.info(f'Rejected invalid request to {request.url.path}: {exc.errors()}')
        return JSONResponse(status_code=400, content=INVALID_REQUEST)

    @app.post('/api/chat')
    async def chat(body: ChatRequest, request: Request) -> StreamingResponse:
        events = registry.pipeline.stream(body.message, body.conversationId, body.imageBase64, body.audioBase64)
        return StreamingResponse(sse_stream(request, events, registry.config.pipeline.keepalive_seconds),
                                 media_type='text/event-stream',
                                 headers=SSE_HEADERS)

    @app.post('/api/chat/tts')
    async def chat_tts(body: TTSRequest) -> Response:
        voice_name = None
        if body.conversationId is not None:
            conversation = registry.store.get_conversation(body.conversationId)
            if conversation:
                voice_name = conversation.voice_settings.get(body.role.value)
        audio = await registry.speech.synthesize(body.text, body.role, voice_name)
        if audio is None:
            return JSONResponse(status_code=503, content={'message': 'Speech synthesis unavailable'})
        return Response(content=audio, media_type='audio/mpeg')

    @app.post('/api/save-rule')
    async def save_rule(body: SaveRuleRequest) -> Any:
        if len(body.text.strip()) < MIN_RULE_SOURCE_LENGTH:
            return JSONResponse(status_code=400, content=INVALID_REQUEST)
        try:
            return await registry.profiles.save_rule(body.text)
        except ProfileServiceError as e:
            logger.error(f'Save rule failed: {e}')
            return JSONResponse(status_code=500, content={'message': 'Failed to save rule'})

    @app.get('/api/conversations')
    async def list_conversations() -> Any:
        return [{
            'id': c.id,
            'title': c.title,
            'messageCount': len(c.messages),
            'createdAt': c.created_at.isoformat(),
            'updatedAt': c.updated_at.isoformat(),
        } for c in registry.store.list_conversations()]

    @app.get('/api/conversations/{conversation_id}')
    async def get_conversation(conversation_id: int) -> Any:
        conversation = registry.store.get_conversation(conversation_id)
        if conversation is None:
            return JSONResponse(status_code=404, content={'message': 'Conversation not found'})
        return conversation.to_dict()

    @app.delete('/api/conversations/{conversation_id}')
    async def delete_conversation(conversation_id: int) -> Any:
        if not registry.store.delete_conversation(conversation_id):
            return JSONResponse(status_code=404, content={'message': 'Conversation not found'})
        return {'success': True}

    @app.get('/api/conversations/{conversation_id}/export')
    async def export_conversation(conversation_id: int) -> Any:
        conversation = registry.store.get_conversation(conversation_id)
        if conversation is None:
            return JSONResponse(status_code=404, content={'message': 'Conversation not found'})
        lines = [f'# {conversation.title}', f'Exported: {to_iso()}', '']
        lines.extend(f'[{m.timestamp}] {speaker_name(m.role)}:\n{m.content}\n' for m in conversation.messages)
        return PlainTextResponse('\n'.join(lines),
                                 headers={'Content-Disposition': f'attachment; filename="conversation-{conversation.id}.txt"'})

    @app.patch('/api/conversations/{conversation_id}/voice-settings')
    async def update_voice_settings(conversation_id: int, body: VoiceSettingsRequest) -> Any:
        if any(voice not in AVAILABLE_VOICES for voice in body.voiceSettings.values()):
            return JSONResponse(status_code=400, content=INVALID_REQUEST)
        conversation = registry.store.get_conversation(conversation_id)
        if conversation is None:
            return JSONResponse(status_code=404, content={'message': 'Conversation not found'})
        settings = {**conversation.voice_settings, **{expert.value: voice for expert, voice in body.voiceSettings.items()}}
        return registry.store.update_voice_settings(conversation_id, settings).to_dict()

    @app.get('/api/export-all')
    async def export_all() -> Dict[str, Any]:
        return {
            'exportedAt': to_iso(),
            'conversations': [c.to_dict() for c in registry.store.list_conversations()],
            'memories': [m.to_dict() for m in registry.memory.list_memories()],
            'acquiredItems': [i.to_dict() for i in registry.store.list_acquired_items()],
        }

    @app.get('/api/user-profile')
    async def get_user_profile() -> Any:
        try:
            return registry.profiles.get_profile().to_dict()
        except ProfileServiceError as e:
            logger.error(f'Profile read failed: {e}')
            return JSONResponse(status_code=500, content={'message': 'Failed to read profile'})

    @app.post('/api/user-profile')
    async def update_user_profile(body: UserProfileRequest) -> Any:
        try:
            return registry.profiles.update_profile(body.coreProfile, body.livingPromptSummary).to_dict()
        except ProfileServiceError as e:
            logger.error(f'Profile update failed: {e}')
            return JSONResponse(status_code=500, content={'message': 'Failed to update profile'})

    @app.get('/api/agent/profile')
    async def agent_profile() -> Any:
        try:
            return registry.profiles.agent_profile()
        except ProfileServiceError as e:
            logger.error(f'Agent profile read failed: {e}')
            return JSONResponse(status_code=500, content={'message': 'Failed to read profile'})

    @app.get('/api/agent/personas')
    async def personas() -> Any:
        return [{**info.to_dict(), **get_voice(expert)} for expert, info in EXPERTS.items()]

    @app.get('/api/memories')
    async def list_memories(limit: int = 50) -> Any:
        return [m.to_dict() for m in registry.memory.list_memories(limit)]

    @app.post('/api/memories')
    async def add_memory(body: MemoryRequest) -> Any:
        return registry.memory.record_episode(body.text, body.category).to_dict()

    @app.get('/api/scout-logs')
    async def scout_logs() -> Any:
        return [entry.to_dict() for entry in registry.scout_cache.entries()]

    @app.get('/api/acquired-items')
    async def acquired_items() -> Any:
        return [item.to_dict() for item in registry.store.list_acquired_items()]

    @app.delete('/api/acquired-items/{item_id}')
    async def delete_acquired_item(item_id: int) -> Any:
        if not registry.store.delete_acquired_item(item_id):
            return JSONResponse(status_code=404, content={'message': 'Item not found'})
        return {'success': True}

    @app.get('/api/voices')
    async def voices() -> Dict[str, Any]:
        return {'voices': list(AVAILABLE_VOICES), 'defaults': default_voice_settings()}

    @app.get('/api/ping')
    async def ping() -> Dict[str, str]:
        return {'status': 'ok', 'timestamp': to_iso()}

    @app.get('/api/health')
    async def health(live: bool = False) -> Any:
        status = await asyncio.to_thread(get_health_status, registry.llm, registry.store, registry.config, live)
        healthy = all(s.get('healthy', False) for s in status.values() if s.get('required', True))
        return JSONResponse(status_code=200 if healthy else 503, content={'healthy': healthy, 'components': status})

    logger.info('HTTP application created')
    return app


if __name__ == '__main__':
    uvicorn.run(create_app(), host=config.api.host, port=config.api.port)
