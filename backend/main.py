"""
FastAPI Backend for GraphGullible

Provides REST API endpoints for:
- Email gate and A/B group assignment
- Dashboard progress and survey-code verification
- The chat module (tutorial + training scenarios)
- Direct transcript / group upserts to Supabase
"""

from fastapi import FastAPI, HTTPException, Depends
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from typing import Optional, List, Dict, Any
import os
import sys
import time
import logging
import signal

# Setup logging with colors and structured output
from lib.logger import setup_logging, get_logger

setup_logging(level=logging.INFO, use_colors=True)

logger = get_logger("backend.main")

# Add the graph_gullible package to Python path
backend_dir = os.path.dirname(os.path.abspath(__file__))
project_root = os.path.dirname(backend_dir)
package_src = os.path.join(project_root, 'graph_gullible', 'src')
if os.path.exists(package_src) and package_src not in sys.path:
    sys.path.insert(0, package_src)

from lib.supabase_client import get_supabase_client
from lib.participant import get_participant_email

from graph_gullible.conversation_controller import ConversationController
from graph_gullible.errors import ConversationStateError, PersistenceError, StudyFlowError
from graph_gullible.persistence import PersistenceGateway
from graph_gullible.response_generator import ResponseGenerator
from graph_gullible.scenarios import catalog_summary
from graph_gullible.session_store import SessionIdStore
from graph_gullible.study_flow import StudyFlow, SurveyKind

# Singletons shared by all participants
_generator: Optional[ResponseGenerator] = None
_gateway: Optional[PersistenceGateway] = None
_session_store: Optional[SessionIdStore] = None

# One protocol state per participant email
_flows: Dict[str, StudyFlow] = {}


def get_generator() -> ResponseGenerator:
    global _generator
    if _generator is None:
        _generator = ResponseGenerator()
    return _generator


def get_gateway() -> PersistenceGateway:
    """Get or create the persistence gateway (in-memory without Supabase)."""
    global _gateway
    if _gateway is None:
        supabase = get_supabase_client()
        if supabase is None:
            logger.warning("Supabase not configured - transcripts are kept in memory")
        _gateway = PersistenceGateway(supabase_client=supabase)
    return _gateway


def get_session_store() -> SessionIdStore:
    global _session_store
    if _session_store is None:
        _session_store = SessionIdStore()
    return _session_store


app = FastAPI(
    title="GraphGullible API",
    description="Teach a naive chatbot to spot misleading charts",
    version="1.0.0"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ==================== Pydantic Models ====================

class EmailSubmission(BaseModel):
    email: str


class SurveyCode(BaseModel):
    code: str


class ChatMessage(BaseModel):
    text: str


class SaveChatRequest(BaseModel):
    session_id: Optional[str] = None
    user_email: Optional[str] = None
    scenario_id: Optional[int] = None
    scenario_title: Optional[str] = None
    messages: Optional[List[Dict[str, str]]] = None


class SaveUserGroupRequest(BaseModel):
    email: Optional[str] = None
    group: Optional[str] = None


# ==================== Helper Functions ====================

def get_flow(email: str = Depends(get_participant_email)) -> StudyFlow:
    """Look up the participant's protocol state."""
    flow = _flows.get(email)
    if flow is None:
        raise HTTPException(status_code=404, detail="Unknown participant - submit your email first")
    return flow


def get_controller(flow: StudyFlow = Depends(get_flow)) -> ConversationController:
    if flow.controller is None:
        raise HTTPException(status_code=404, detail="Chat not available")
    return flow.controller


def study_error(e: StudyFlowError) -> HTTPException:
    return HTTPException(status_code=400, detail=str(e))


def conversation_error(e: ConversationStateError) -> HTTPException:
    return HTTPException(status_code=409, detail=str(e))


def chat_state(flow: StudyFlow) -> Dict[str, Any]:
    return {"flow": flow.summary(), "chat": flow.controller.snapshot()}


# ==================== API Endpoints ====================

@app.get("/")
async def root():
    """Health check endpoint."""
    return {
        "status": "ok",
        "service": "GraphGullible API",
        "version": "1.0.0",
        "supabase_connected": get_gateway().use_supabase,
    }


@app.get("/api/scenarios")
async def list_scenarios():
    """Scenario catalog with chart data."""
    return {"scenarios": catalog_summary()}


@app.post("/api/participants")
async def register_participant(submission: EmailSubmission):
    """Email gate: assign an A/B group and open the dashboard."""
    flow = StudyFlow(
        generator=get_generator(),
        gateway=get_gateway(),
        session_store=get_session_store(),
    )
    try:
        group = flow.submit_email(submission.email)
    except StudyFlowError as e:
        raise study_error(e)

    _flows[flow.user_email] = flow
    logger.success("Participant registered", data={"group": group.value})
    return flow.summary()


@app.get("/api/dashboard")
async def get_dashboard(flow: StudyFlow = Depends(get_flow)):
    """Dashboard steps and the participant's survey links."""
    return {
        **flow.summary(),
        "steps": flow.dashboard(),
        "survey_urls": {kind.value: flow.survey_url(kind) for kind in SurveyKind},
    }


@app.post("/api/surveys/{kind}/verify")
async def verify_survey(kind: SurveyKind, body: SurveyCode, flow: StudyFlow = Depends(get_flow)):
    """Verify a survey completion code."""
    try:
        progress = flow.verify_survey_code(kind, body.code)
    except StudyFlowError as e:
        raise study_error(e)
    return {"progress": progress.to_dict(), "steps": flow.dashboard()}


@app.post("/api/chat/enter")
async def enter_chat(flow: StudyFlow = Depends(get_flow)):
    """Open the chat module at the intro overlay."""
    try:
        flow.enter_chat()
    except StudyFlowError as e:
        raise study_error(e)
    return chat_state(flow)


@app.post("/api/chat/start-tutorial")
async def start_tutorial(flow: StudyFlow = Depends(get_flow)):
    try:
        await flow.start_tutorial()
    except StudyFlowError as e:
        raise study_error(e)
    return chat_state(flow)


@app.post("/api/chat/start-training")
async def start_training(flow: StudyFlow = Depends(get_flow)):
    try:
        await flow.start_training()
    except StudyFlowError as e:
        raise study_error(e)
    return chat_state(flow)


@app.post("/api/chat/messages")
async def send_message(
    message: ChatMessage,
    flow: StudyFlow = Depends(get_flow),
    controller: ConversationController = Depends(get_controller),
):
    """Send the participant's message and return the updated conversation."""
    text = message.text.strip()
    if not text:
        raise HTTPException(status_code=400, detail="Message is empty")

    start_time = time.time()
    logger.request("POST", "/api/chat/messages", participant=flow.user_email, data={
        "scenario_id": controller.scenario.id,
        "step": controller.session.step.name,
        "message_length": len(text),
    })
    try:
        await controller.submit_user_message(text)
    except ConversationStateError as e:
        raise conversation_error(e)

    logger.response(200, "/api/chat/messages", duration=time.time() - start_time, data={
        "step": controller.session.step.name,
        "mistake_count": controller.session.mistake_count,
    })
    return chat_state(flow)


@app.post("/api/chat/resend")
async def resend_message(
    flow: StudyFlow = Depends(get_flow),
    controller: ConversationController = Depends(get_controller),
):
    """Retry the last message after a failed bot reply."""
    try:
        await controller.resend_last()
    except ConversationStateError as e:
        raise conversation_error(e)
    return chat_state(flow)


@app.post("/api/chat/next")
async def next_scenario(flow: StudyFlow = Depends(get_flow)):
    """Finish the current scenario and move on (or show an overlay)."""
    try:
        outcome = await flow.next_scenario()
    except StudyFlowError as e:
        raise study_error(e)
    except ConversationStateError as e:
        raise conversation_error(e)
    return {"outcome": outcome.value, **chat_state(flow)}


@app.post("/api/chat/complete")
async def complete_chat(flow: StudyFlow = Depends(get_flow)):
    """Close the chat module after the last scenario."""
    try:
        progress = flow.complete_chat_module()
    except StudyFlowError as e:
        raise study_error(e)
    return {"progress": progress.to_dict(), "steps": flow.dashboard()}


@app.post("/api/chat/leave")
async def leave_chat(flow: StudyFlow = Depends(get_flow)):
    """Back to the dashboard without completing the module."""
    flow.return_to_dashboard()
    return flow.summary()


@app.get("/api/chat/state")
async def get_chat_state(flow: StudyFlow = Depends(get_flow), controller: ConversationController = Depends(get_controller)):
    return chat_state(flow)


@app.post("/api/save-chat")
async def save_chat(body: SaveChatRequest):
    """Upsert a transcript keyed by session id."""
    gateway = get_gateway()
    try:
        gateway.build_chat_row(body.session_id, body.user_email, body.scenario_id, body.scenario_title or "", body.messages)
    except PersistenceError:
        logger.warning("Missing fields on save-chat", data={
            "session_id": body.session_id,
            "scenario_id": body.scenario_id,
            "has_messages": body.messages is not None,
        })
        raise HTTPException(status_code=400, detail="Missing required fields")

    saved = await gateway.save_chat_session(
        body.session_id, body.user_email, body.scenario_id, body.scenario_title or "", body.messages
    )
    if not saved:
        raise HTTPException(status_code=500, detail="Failed to save session")
    return {"success": True, "sid": body.session_id}


@app.post("/api/save-user-group")
async def save_user_group(body: SaveUserGroupRequest):
    """Upsert a participant's group assignment."""
    if not body.email or not body.group:
        raise HTTPException(status_code=400, detail="Missing email or group")

    saved = await get_gateway().save_user_group(body.email, body.group)
    if not saved:
        raise HTTPException(status_code=500, detail="Failed to save user group")
    return {"success": True}


@app.on_event("shutdown")
async def shutdown_event():
    """Flush pending transcript writes."""
    if _gateway is not None:
        await _gateway.drain()
        logger.info("🛑 Pending writes flushed")


if __name__ == "__main__":
    import uvicorn

    def handle_exit(*args):
        """Handle graceful shutdown."""
        logger.section("SERVER SHUTDOWN", {"reason": "signal received"})
        sys.exit(0)

    signal.signal(signal.SIGINT, handle_exit)
    signal.signal(signal.SIGTERM, handle_exit)

    try:
        uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
    except KeyboardInterrupt:
        logger.info("🛑 Server stopped.")
        sys.exit(0)
