"""FastAPI server for approval delivery, agent callbacks and channel control."""

import base64
import binascii
import json
import logging
import time
from typing import Any, Literal, Optional

from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel, ValidationError
from starlette.middleware.base import BaseHTTPMiddleware

from .approvals import parse_decision
from .models import DeliveryResult, EventType
from .process_session import ProcessSessionError

logger = logging.getLogger(__name__)


class RequestTimingMiddleware(BaseHTTPMiddleware):
    """Log slow requests for debugging."""

    def __init__(self, app, config: Optional[dict] = None):
        super().__init__(app)
        self.config = config or {}

        # Load timing thresholds from config
        timeouts = self.config.get("timeouts", {})
        server_timeouts = timeouts.get("server", {})
        self.slow_threshold = server_timeouts.get("slow_request_threshold_seconds", 1.0)
        self.timing_threshold = server_timeouts.get("request_timing_threshold_seconds", 0.1)
        # Approval requests block until a human answers; never "slow"
        self.exempt_paths = {"/approvals"}

    async def dispatch(self, request: Request, call_next):
        start = time.monotonic()
        response = await call_next(request)
        elapsed = time.monotonic() - start

        if request.url.path in self.exempt_paths:
            return response

        if elapsed > self.slow_threshold:
            logger.warning(
                f"SLOW REQUEST: {request.method} {request.url.path} "
                f"took {elapsed:.2f}s"
            )
        elif elapsed > self.timing_threshold:
            logger.info(
                f"Request: {request.method} {request.url.path} "
                f"took {elapsed*1000:.0f}ms"
            )

        return response


class ApprovalResponseRequest(BaseModel):
    """Decision for a pending approval (legacy senders use `approved`)."""
    requestId: str
    response: Optional[Literal["allow", "allow_session", "deny"]] = None
    approved: Optional[bool] = None


class ApprovalRequest(BaseModel):
    """Approval request from the agent's permission tool."""
    channel_id: str
    tool_name: str
    request_id: Optional[str] = None
    tool_input: Any = None
    timeout_seconds: Optional[float] = None


class AgentMessageRequest(BaseModel):
    """Message the agent wants posted to its channel."""
    channel_id: str
    type: Literal["markdown", "mention", "action", "result", "file_upload"] = "markdown"
    content: str  # Base64 file contents for file_upload
    mention_text: Optional[str] = None
    filename: Optional[str] = None


class SendInputRequest(BaseModel):
    """Request to run a command on a channel."""
    text: str
    user_id: Optional[str] = None
    credential_alias: Optional[str] = None


class PromptResponseRequest(BaseModel):
    option_index: int


class SetModelRequest(BaseModel):
    model: str


def create_app(
    registry=None,
    dispatcher=None,
    coordinator=None,
    notifier=None,
    credentials=None,
    config: Optional[dict] = None,
    lifespan=None,
) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        registry: ChannelSessionRegistry instance
        dispatcher: CommandDispatcher instance
        coordinator: ApprovalCoordinator instance
        notifier: Notifier instance
        credentials: CredentialStore instance
        config: Configuration dictionary
        lifespan: Optional ASGI lifespan context manager

    Returns:
        Configured FastAPI app
    """
    app = FastAPI(
        title="Agent Relay",
        description="Relay chat channels to long-running agent sessions",
        version="0.1.0",
        lifespan=lifespan,
    )

    # Store config first so middleware can access it
    app.state.config = config or {}

    app.add_middleware(RequestTimingMiddleware, config=config)

    app.state.registry = registry
    app.state.dispatcher = dispatcher
    app.state.coordinator = coordinator
    app.state.notifier = notifier
    app.state.credentials = credentials

    def _require_dispatcher():
        if not app.state.dispatcher or not app.state.registry:
            raise HTTPException(status_code=503, detail="Dispatcher not configured")

    def _require_channel(channel_id: str):
        _require_dispatcher()
        session = app.state.registry.get(channel_id)
        if not session:
            raise HTTPException(status_code=404, detail="Channel not found")
        return session

    def _resolve_credential(request: SendInputRequest) -> Optional[str]:
        store = app.state.credentials
        if not store:
            return None
        if request.credential_alias:
            credential = store.get(request.credential_alias)
            if not credential:
                raise HTTPException(status_code=400, detail=f"Unknown credential alias: {request.credential_alias}")
            return credential.token
        credential = store.for_user(request.user_id)
        return credential.token if credential else None

    @app.get("/")
    async def root():
        """Health check endpoint."""
        return {"status": "ok", "service": "agent-relay"}

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        registry = app.state.registry
        coordinator = app.state.coordinator
        return {
            "status": "healthy",
            "channels": len(registry.sessions) if registry else 0,
            "pending_approvals": coordinator.pending_count if coordinator else 0,
        }

    # ------------------------------------------------------------------
    # Approvals
    # ------------------------------------------------------------------

    @app.post("/approval-response")
    async def approval_response(request: Request):
        """Deliver a decision for a pending approval. Unknown ids are accepted and ignored."""
        if not app.state.coordinator:
            raise HTTPException(status_code=503, detail="Approval coordinator not configured")

        try:
            body = await request.json()
            payload = ApprovalResponseRequest.model_validate(body)
            decision = parse_decision(payload.response, payload.approved)
        except (json.JSONDecodeError, UnicodeDecodeError, ValidationError, ValueError) as e:
            logger.warning(f"Malformed approval response: {e}")
            raise HTTPException(status_code=400, detail="Invalid approval response payload")

        resolved = app.state.coordinator.resolve_approval(payload.requestId, decision)
        return {
            "status": "resolved" if resolved else "ignored",
            "request_id": payload.requestId,
            "decision": decision.value,
        }

    @app.post("/approvals")
    async def request_approval(request: ApprovalRequest):
        """Register an approval request and wait for the decision (timeout counts as deny)."""
        if not app.state.coordinator:
            raise HTTPException(status_code=503, detail="Approval coordinator not configured")

        try:
            decision = await app.state.coordinator.request_approval(
                request.channel_id,
                request.tool_name,
                request_id=request.request_id,
                timeout=request.timeout_seconds,
                tool_input=request.tool_input,
            )
        except ValueError as e:
            raise HTTPException(status_code=409, detail=str(e))

        response = {
            "behavior": "allow" if decision.is_allowed else "deny",
            "decision": decision.value,
        }
        if decision.is_allowed:
            response["updatedInput"] = request.tool_input
        else:
            response["message"] = "User rejected the operation"
        return response

    @app.post("/messages")
    async def agent_message(request: AgentMessageRequest):
        """Post an agent-originated message (or file) to its channel."""
        extra = {}
        if request.type == "file_upload":
            if not request.filename:
                raise HTTPException(status_code=400, detail="file_upload requires a filename")
            try:
                extra["file_data"] = base64.b64decode(request.content, validate=True)
            except binascii.Error:
                raise HTTPException(status_code=400, detail="file_upload content must be base64")
            extra["filename"] = request.filename

        if app.state.dispatcher:
            # The agent answered through the channel itself; turn-complete won't repost its result text
            app.state.dispatcher.mark_agent_posted(request.channel_id)

        delivered = 0
        if app.state.notifier:
            delivered = await app.state.notifier.notify(
                request.channel_id,
                EventType.AGENT_MESSAGE,
                kind=request.type,
                content="" if request.type == "file_upload" else request.content,
                mention_text=request.mention_text,
                **extra,
            )
        return {"status": "posted", "channel_id": request.channel_id, "handlers": delivered}

    # ------------------------------------------------------------------
    # Channels
    # ------------------------------------------------------------------

    @app.get("/channels")
    async def list_channels():
        _require_dispatcher()
        return {"channels": [s.to_dict() for s in app.state.registry.list_sessions()]}

    @app.get("/channels/{channel_id}")
    async def get_channel(channel_id: str):
        session = _require_channel(channel_id)
        return session.to_dict()

    @app.get("/channels/{channel_id}/output")
    async def get_output(channel_id: str, lines: int = 50):
        """Recent terminal output (ANSI stripped)."""
        _require_channel(channel_id)
        output = app.state.dispatcher.get_output(channel_id, lines)
        return {"channel_id": channel_id, "output": "".join(output) if output else ""}

    @app.get("/channels/{channel_id}/usage")
    async def get_usage(channel_id: str):
        _require_channel(channel_id)
        return {"channel_id": channel_id, "usage": app.state.dispatcher.usage_summary(channel_id)}

    @app.post("/channels/{channel_id}/input")
    async def send_input(channel_id: str, request: SendInputRequest):
        """Run a command on a channel, spawning its process on first use."""
        _require_dispatcher()
        credential = _resolve_credential(request)

        try:
            await app.state.dispatcher.ensure_process(channel_id, credential)
        except ProcessSessionError as e:
            raise HTTPException(status_code=500, detail=str(e))

        result, _ = await app.state.dispatcher.submit(channel_id, request.text, credential)
        if result == DeliveryResult.FAILED:
            raise HTTPException(status_code=500, detail="Failed to send input")

        response = {"status": result.value, "channel_id": channel_id}
        if result == DeliveryResult.QUEUED:
            response["queue_position"] = app.state.registry.get(channel_id).queue_length
        return response

    @app.post("/channels/{channel_id}/reset")
    async def reset_channel(channel_id: str):
        _require_channel(channel_id)
        await app.state.dispatcher.reset_conversation(channel_id)
        return {"status": "reset", "channel_id": channel_id}

    @app.post("/channels/{channel_id}/interrupt")
    async def interrupt_channel(channel_id: str):
        _require_channel(channel_id)
        if not await app.state.dispatcher.interrupt(channel_id):
            raise HTTPException(status_code=500, detail="Failed to interrupt channel")
        return {"status": "interrupted", "channel_id": channel_id}

    @app.post("/channels/{channel_id}/prompt-response")
    async def prompt_response(channel_id: str, request: PromptResponseRequest):
        session = _require_channel(channel_id)
        if session.pending_prompt is None:
            raise HTTPException(status_code=409, detail="No pending prompt")
        if not await app.state.dispatcher.send_prompt_response(channel_id, request.option_index):
            raise HTTPException(status_code=400, detail="Failed to answer prompt")
        return {"status": "answered", "channel_id": channel_id, "option_index": request.option_index}

    @app.put("/channels/{channel_id}/model")
    async def set_model(channel_id: str, request: SetModelRequest):
        _require_dispatcher()
        app.state.dispatcher.set_model(channel_id, request.model)
        return {"channel_id": channel_id, "model": app.state.dispatcher.get_model(channel_id)}

    @app.delete("/channels/{channel_id}/model")
    async def clear_model(channel_id: str):
        _require_channel(channel_id)
        app.state.dispatcher.clear_model(channel_id)
        return {"channel_id": channel_id, "model": app.state.dispatcher.get_model(channel_id)}

    @app.delete("/channels/{channel_id}")
    async def teardown_channel(channel_id: str):
        """Stop the channel's process and forget its in-memory state."""
        _require_channel(channel_id)
        if app.state.coordinator:
            app.state.coordinator.cancel_channel(channel_id)
        if not await app.state.dispatcher.teardown(channel_id):
            raise HTTPException(status_code=500, detail="Failed to tear down channel")
        return {"status": "removed", "channel_id": channel_id}

    return app
