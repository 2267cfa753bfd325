from fastapi import APIRouter, Depends, HTTPException, Response
from pydantic import BaseModel

from research_agent.interaction import FlashcardDeck, SectionInteractionHub
from research_agent.openai_service import OpenAIGenerationService
from research_agent.plan_model import USER_SECTION_DESCRIPTION, new_id
from research_agent.service import GenerationFailure, GenerationService
from research_agent.workflow import WorkflowController

router = APIRouter()

_sessions: dict[str, WorkflowController] = {}
_service: GenerationService | None = None


def get_service() -> GenerationService:
    global _service
    if _service is None:
        _service = OpenAIGenerationService()
    return _service


def get_sessions() -> dict[str, WorkflowController]:
    return _sessions


class PointView(BaseModel):
    id: str
    content: str
    is_enabled: bool


class PlanSectionView(BaseModel):
    id: str
    title: str
    description: str
    is_enabled: bool
    points: list[PointView]


class PlanView(BaseModel):
    title: str
    objective: str
    sections: list[PlanSectionView]


class SourceView(BaseModel):
    title: str
    uri: str


class ReportView(BaseModel):
    title: str
    markdown_body: str
    sources: list[SourceView]
    cover_image: str | None
    word_count: int
    time_elapsed_seconds: int


class SessionView(BaseModel):
    id: str
    state: str
    query: str | None
    plan: PlanView | None
    report: ReportView | None
    error: str | None


class ParsedSectionView(BaseModel):
    id: str
    title: str
    content: str


class ChatMessageView(BaseModel):
    role: str
    content: str


class ChatView(BaseModel):
    section_id: str
    messages: list[ChatMessageView]


class FlashcardView(BaseModel):
    id: str
    front: str
    back: str


class DeckView(BaseModel):
    section_id: str
    status: str
    cards: list[FlashcardView]
    cursor: int
    flipped: bool
    error: str | None


class ExportView(BaseModel):
    markdown: str


class QueryRequest(BaseModel):
    query: str


class ModifyRequest(BaseModel):
    instruction: str


class AddSectionRequest(BaseModel):
    title: str
    description: str = USER_SECTION_DESCRIPTION


class AddPointRequest(BaseModel):
    content: str


class ChatRequest(BaseModel):
    message: str


class RefineRequest(BaseModel):
    instruction: str


def _session_view(session_id: str, controller: WorkflowController) -> SessionView:
    report = controller.report
    return SessionView(
        id=session_id,
        state=controller.state.value,
        query=controller.query,
        plan=PlanView.model_validate(controller.plan.to_dict()) if controller.plan else None,
        report=ReportView(
            title=report.title,
            markdown_body=report.markdown_body,
            sources=[SourceView(title=s.title, uri=s.uri) for s in report.sources],
            cover_image=report.cover_image,
            word_count=report.word_count,
            time_elapsed_seconds=report.time_elapsed_seconds,
        ) if report else None,
        error=controller.error,
    )


def _deck_view(deck: FlashcardDeck) -> DeckView:
    return DeckView(
        section_id=deck.section_id,
        status=deck.status.value,
        cards=[FlashcardView(id=c.id, front=c.front, back=c.back) for c in deck.cards],
        cursor=deck.cursor,
        flipped=deck.flipped,
        error=deck.error,
    )


def _controller(session_id: str, sessions: dict[str, WorkflowController]) -> WorkflowController:
    controller = sessions.get(session_id)
    if controller is None:
        raise HTTPException(status_code=404, detail=f"Session not found: {session_id}")
    return controller


def _hub(controller: WorkflowController) -> SectionInteractionHub:
    if controller.interactions is None:
        raise HTTPException(status_code=409, detail="No completed report in this session")
    return controller.interactions


def _check_section(hub: SectionInteractionHub, section_id: str) -> None:
    try:
        hub.get_section(section_id)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Section not found: {section_id}")


@router.post("/sessions", response_model=SessionView, status_code=201)
async def create_session(
    service: GenerationService = Depends(get_service),
    sessions: dict[str, WorkflowController] = Depends(get_sessions),
):
    session_id = new_id()
    sessions[session_id] = WorkflowController(service)
    return _session_view(session_id, sessions[session_id])


@router.get("/sessions/{session_id}", response_model=SessionView)
async def get_session(session_id: str, sessions: dict = Depends(get_sessions)):
    return _session_view(session_id, _controller(session_id, sessions))


@router.delete("/sessions/{session_id}", status_code=204)
async def delete_session(session_id: str, sessions: dict = Depends(get_sessions)):
    controller = _controller(session_id, sessions)
    controller.reset()
    del sessions[session_id]
    return Response(status_code=204)


@router.post("/sessions/{session_id}/query", response_model=SessionView)
async def submit_query(session_id: str, request: QueryRequest, sessions: dict = Depends(get_sessions)):
    controller = _controller(session_id, sessions)
    try:
        await controller.submit_query(request.query)
    except GenerationFailure:
        raise HTTPException(status_code=502, detail=controller.error)
    return _session_view(session_id, controller)


@router.post("/sessions/{session_id}/modify", response_model=SessionView)
async def request_modification(
    session_id: str, request: ModifyRequest, sessions: dict = Depends(get_sessions)
):
    controller = _controller(session_id, sessions)
    try:
        await controller.request_modification(request.instruction)
    except GenerationFailure:
        raise HTTPException(status_code=502, detail=controller.error)
    return _session_view(session_id, controller)


@router.post("/sessions/{session_id}/run", response_model=SessionView)
async def confirm_and_run(session_id: str, sessions: dict = Depends(get_sessions)):
    controller = _controller(session_id, sessions)
    try:
        await controller.confirm_and_run()
    except GenerationFailure:
        raise HTTPException(status_code=502, detail=controller.error)
    return _session_view(session_id, controller)


@router.post("/sessions/{session_id}/reset", response_model=SessionView)
async def reset(session_id: str, sessions: dict = Depends(get_sessions)):
    controller = _controller(session_id, sessions)
    controller.reset()
    return _session_view(session_id, controller)


@router.post("/sessions/{session_id}/plan/sections", response_model=SessionView)
async def add_section(session_id: str, request: AddSectionRequest, sessions: dict = Depends(get_sessions)):
    controller = _controller(session_id, sessions)
    controller.add_section(request.title, request.description)
    return _session_view(session_id, controller)


@router.post("/sessions/{session_id}/plan/sections/{section_id}/toggle", response_model=SessionView)
async def toggle_section(session_id: str, section_id: str, sessions: dict = Depends(get_sessions)):
    controller = _controller(session_id, sessions)
    controller.toggle_section(section_id)
    return _session_view(session_id, controller)


@router.delete("/sessions/{session_id}/plan/sections/{section_id}", response_model=SessionView)
async def delete_section(
    session_id: str, section_id: str, confirmed: bool = True, sessions: dict = Depends(get_sessions)
):
    controller = _controller(session_id, sessions)
    controller.delete_section(section_id, confirmed=confirmed)
    return _session_view(session_id, controller)


@router.post("/sessions/{session_id}/plan/sections/{section_id}/points", response_model=SessionView)
async def add_point(
    session_id: str, section_id: str, request: AddPointRequest, sessions: dict = Depends(get_sessions)
):
    controller = _controller(session_id, sessions)
    controller.add_point(section_id, request.content)
    return _session_view(session_id, controller)


@router.post(
    "/sessions/{session_id}/plan/sections/{section_id}/points/{point_id}/toggle",
    response_model=SessionView,
)
async def toggle_point(session_id: str, section_id: str, point_id: str, sessions: dict = Depends(get_sessions)):
    controller = _controller(session_id, sessions)
    controller.toggle_point(section_id, point_id)
    return _session_view(session_id, controller)


@router.delete(
    "/sessions/{session_id}/plan/sections/{section_id}/points/{point_id}",
    response_model=SessionView,
)
async def delete_point(
    session_id: str,
    section_id: str,
    point_id: str,
    confirmed: bool = True,
    sessions: dict = Depends(get_sessions),
):
    controller = _controller(session_id, sessions)
    controller.delete_point(section_id, point_id, confirmed=confirmed)
    return _session_view(session_id, controller)


@router.get("/sessions/{session_id}/sections", response_model=list[ParsedSectionView])
async def list_sections(session_id: str, sessions: dict = Depends(get_sessions)):
    hub = _hub(_controller(session_id, sessions))
    return [ParsedSectionView(id=s.id, title=s.title, content=s.content) for s in hub.sections]


@router.post("/sessions/{session_id}/sections/{section_id}/chat/start", response_model=ChatView)
async def start_chat(session_id: str, section_id: str, sessions: dict = Depends(get_sessions)):
    hub = _hub(_controller(session_id, sessions))
    _check_section(hub, section_id)
    hub.start_chat(section_id)
    return ChatView(section_id=section_id, messages=[])


@router.post("/sessions/{session_id}/sections/{section_id}/chat", response_model=ChatView)
async def send_message(
    session_id: str, section_id: str, request: ChatRequest, sessions: dict = Depends(get_sessions)
):
    hub = _hub(_controller(session_id, sessions))
    _check_section(hub, section_id)
    await hub.send_message(section_id, request.message)
    messages = [ChatMessageView(role=m.role, content=m.content) for m in hub.history(section_id)]
    return ChatView(section_id=section_id, messages=messages)


@router.post("/sessions/{session_id}/sections/{section_id}/flashcards", response_model=DeckView)
async def generate_flashcards(session_id: str, section_id: str, sessions: dict = Depends(get_sessions)):
    hub = _hub(_controller(session_id, sessions))
    _check_section(hub, section_id)
    deck = await hub.generate_flashcards(section_id)
    if deck is None:
        raise HTTPException(status_code=409, detail="Flashcard request was superseded")
    return _deck_view(deck)


@router.post("/sessions/{session_id}/flashcards/{action}", response_model=DeckView)
async def navigate_flashcards(session_id: str, action: str, sessions: dict = Depends(get_sessions)):
    hub = _hub(_controller(session_id, sessions))
    deck = hub.deck
    if deck is None:
        raise HTTPException(status_code=404, detail="No flashcard deck")
    if action == "next":
        deck.next()
    elif action == "previous":
        deck.previous()
    elif action == "flip":
        deck.flip()
    else:
        raise HTTPException(status_code=404, detail=f"Unknown flashcard action: {action}")
    return _deck_view(deck)


@router.post("/sessions/{session_id}/sections/{section_id}/refine", response_model=ParsedSectionView)
async def refine_section(
    session_id: str, section_id: str, request: RefineRequest, sessions: dict = Depends(get_sessions)
):
    hub = _hub(_controller(session_id, sessions))
    _check_section(hub, section_id)
    try:
        section = await hub.refine_section(section_id, request.instruction)
    except GenerationFailure as e:
        raise HTTPException(status_code=502, detail=f"Refine failed: {e}")
    if section is None:
        raise HTTPException(status_code=409, detail="Refine request was superseded")
    return ParsedSectionView(id=section.id, title=section.title, content=section.content)


@router.delete("/sessions/{session_id}/error", response_model=SessionView)
async def dismiss_error(session_id: str, sessions: dict = Depends(get_sessions)):
    controller = _controller(session_id, sessions)
    controller.clear_error()
    return _session_view(session_id, controller)


@router.get("/sessions/{session_id}/report/markdown", response_model=ExportView)
async def export_report(session_id: str, sessions: dict = Depends(get_sessions)):
    """Current report text, including any refined sections."""
    hub = _hub(_controller(session_id, sessions))
    return ExportView(markdown=hub.render_markdown())
