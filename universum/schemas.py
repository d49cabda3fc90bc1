from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, model_validator


Role = Literal["user", "model", "system", "coach"]
Domain = Literal["general", "creative", "technical", "research", "data_analysis", "spreadsheet", "video", "math"]
Complexity = Literal["simple", "moderate", "complex"]
Intent = Literal[
    "conversation",
    "information_retrieval",
    "content_creation",
    "problem_solving",
    "data_analysis",
    "code_development",
    "creative_ideation",
]
Strategy = Literal[
    "standard",
    "deep_search",
    "code_interpreter",
    "creative_suite",
    "spreadsheet_specialist",
    "multi_agent_collaboration",
]
StepType = Literal["core", "agent", "task"]
StepStatus = Literal["pending", "active", "completed"]
ArtifactKind = Literal["image", "pdf", "spreadsheet", "presentation", "word", "video"]
AttachmentType = Literal["local", "text", "cloud"]


class Verdict(BaseModel):
    domain: Domain = "general"
    complexity: Complexity = "simple"
    intent: Intent = "conversation"
    tool: Strategy = "standard"


class InlineData(BaseModel):
    mime_type: str
    data: str
    name: Optional[str] = None


class TextAttachment(BaseModel):
    title: str
    content: str
    provider: Optional[str] = None


class GroundingCitation(BaseModel):
    uri: str
    title: str = ""


class VideoResult(BaseModel):
    video_id: str
    title: str
    thumbnail_url: str
    channel_title: str


class CodeBlock(BaseModel):
    language: str = "html"
    code: str


class AnalysisStep(BaseModel):
    id: str
    type: StepType = "core"
    title: str
    status: StepStatus = "pending"
    details: Optional[str] = None
    icon: Optional[str] = None


class ArtifactProgress(BaseModel):
    kind: ArtifactKind
    status: Optional[str] = None
    phase: Optional[str] = None
    filename: Optional[str] = None
    count: Optional[int] = None


class EncodedFile(BaseModel):
    filename: str
    mime_type: str
    data: str
    size: int = 0


class ImageArtifact(BaseModel):
    kind: Literal["image"] = "image"
    images: List[InlineData]


class PdfDocument(BaseModel):
    filename: str
    title: str
    header_title: str
    toc_markdown: str = ""
    body_markdown: str = ""


class PdfArtifact(BaseModel):
    kind: Literal["pdf"] = "pdf"
    document: PdfDocument
    file: Optional[EncodedFile] = None


class SpreadsheetArtifact(BaseModel):
    kind: Literal["spreadsheet"] = "spreadsheet"
    filename: str
    sheets: List[Dict[str, Any]]
    file: Optional[EncodedFile] = None


class PresentationDeck(BaseModel):
    theme: Dict[str, Any] = Field(default_factory=dict)
    slides: List[Dict[str, Any]] = Field(default_factory=list)

    model_config = {"extra": "allow"}


class PresentationArtifact(BaseModel):
    kind: Literal["presentation"] = "presentation"
    filename: str
    deck: PresentationDeck
    file: Optional[EncodedFile] = None


class WordRun(BaseModel):
    text: str
    bold: bool = False
    italic: bool = False
    color: Optional[str] = None
    size: Optional[int] = None


class WordParagraph(BaseModel):
    type: Literal["heading1", "heading2", "bullet", "paragraph"] = "paragraph"
    runs: List[WordRun] = Field(default_factory=list)
    alignment: Literal["start", "center", "end", "justify"] = "start"
    spacing_before: Optional[int] = None
    spacing_after: Optional[int] = None


class WordDocument(BaseModel):
    filename: str
    font: str = "Calibri"
    primary_color: str = "2E74B5"
    paragraphs: List[WordParagraph] = Field(default_factory=list)


class WordArtifact(BaseModel):
    kind: Literal["word"] = "word"
    document: WordDocument
    file: Optional[EncodedFile] = None


class VideoArtifact(BaseModel):
    kind: Literal["video"] = "video"
    mime_type: str = "video/mp4"
    data_url: str


ArtifactPayload = Annotated[
    Union[ImageArtifact, PdfArtifact, SpreadsheetArtifact, PresentationArtifact, WordArtifact, VideoArtifact],
    Field(discriminator="kind"),
]


class Message(BaseModel):
    id: str
    role: Role
    content_history: List[str] = Field(default_factory=list)
    active_version_index: int = 0
    images: List[InlineData] = Field(default_factory=list)
    audio: Optional[InlineData] = None
    text_attachment: Optional[TextAttachment] = None
    grounding: List[GroundingCitation] = Field(default_factory=list)
    video_search_results: Optional[List[VideoResult]] = None
    code_block: Optional[CodeBlock] = None
    analysis_state: Optional[List[AnalysisStep]] = None
    is_typing: bool = False
    generation_time: Optional[float] = None
    pending_artifact: Optional[ArtifactKind] = None
    artifact_progress: Optional[ArtifactProgress] = None
    artifact: Optional[ArtifactPayload] = None
    requires_key_selection: bool = False

    @model_validator(mode="after")
    def _check_versions(self) -> "Message":
        if not self.content_history:
            self.active_version_index = 0
        else:
            last = len(self.content_history) - 1
            self.active_version_index = max(0, min(self.active_version_index, last))
        if self.pending_artifact is not None and self.artifact is not None:
            raise ValueError("pending_artifact and artifact are mutually exclusive")
        return self

    @property
    def active_content(self) -> str:
        if not self.content_history:
            return ""
        return self.content_history[self.active_version_index]


class ForkInfo(BaseModel):
    parent_conversation_id: str
    parent_message_id: str


class Conversation(BaseModel):
    id: str
    title: str = "New Chat"
    model: str = "universum-4.0"
    created_at: int = 0
    is_pinned: bool = False
    messages: List[Message] = Field(default_factory=list)
    fork_info: Optional[ForkInfo] = None


class MemoryFact(BaseModel):
    id: str
    content: str
    created_at: int = 0


class CoachGoal(BaseModel):
    id: str
    content: str
    created_at: int = 0


class RecentAttachment(BaseModel):
    type: AttachmentType
    name: Optional[str] = None
    title: Optional[str] = None
    content: Optional[str] = None
    provider: Optional[str] = None
    file_id: Optional[str] = None
    mime_type: Optional[str] = None

    @property
    def identity(self) -> str:
        if self.type == "local":
            return f"local:{self.name or ''}"
        return f"{self.type}:{self.title or ''}"


class CloudConnection(BaseModel):
    provider: str
    account: str
    connected_at: int = 0


class UserRecord(BaseModel):
    name: str
    email: str


class StoredUser(UserRecord):
    password_hash: str
    salt: str


# Generation service contract


class GenerationConfig(BaseModel):
    system_instruction: str = ""
    temperature: float = 0.5
    tools: List[Dict[str, Any]] = Field(default_factory=list)
    web_search: bool = False
    thinking_budget: Optional[int] = None
    response_schema: Optional[Dict[str, Any]] = None


class FunctionCall(BaseModel):
    name: str
    args: Dict[str, Any] = Field(default_factory=dict)


class GenerationResult(BaseModel):
    text: str = ""
    function_calls: List[FunctionCall] = Field(default_factory=list)
    grounding: List[GroundingCitation] = Field(default_factory=list)
    model_turn: Optional[Dict[str, Any]] = None


class GenerationPlan(BaseModel):
    model: str
    config: GenerationConfig


class VideoOperation(BaseModel):
    name: str
    done: bool = False
    error: Optional[str] = None
    uri: Optional[str] = None


# Action payloads embedded in model text


class ImageAction(BaseModel):
    action: Literal["generate_image"]
    prompt: str
    count: int = 1


class PdfAction(BaseModel):
    action: Literal["generate_pdf"]
    filename: str
    title: str
    content: str


class SpreadsheetAction(BaseModel):
    action: Literal["generate_spreadsheet"]
    filename: str
    sheets: List[Dict[str, Any]] = Field(min_length=1)


class PresentationData(BaseModel):
    theme: Dict[str, Any] = Field(default_factory=dict)
    slides: List[Dict[str, Any]]

    model_config = {"extra": "allow"}


class PresentationAction(BaseModel):
    action: Literal["generate_presentation"]
    filename: str
    data: PresentationData


class WordAction(BaseModel):
    action: Literal["generate_word"]
    filename: str
    content: List[Dict[str, Any]]
    theme: Dict[str, Any] = Field(default_factory=dict)


class VideoAction(BaseModel):
    action: Literal["generate_video"]
    prompt: str
    aspect_ratio: Literal["16:9", "9:16"] = Field(default="16:9", alias="aspectRatio")

    model_config = {"populate_by_name": True}


ActionPayload = Annotated[
    Union[ImageAction, PdfAction, SpreadsheetAction, PresentationAction, WordAction, VideoAction],
    Field(discriminator="action"),
]
ACTION_ADAPTER: TypeAdapter = TypeAdapter(ActionPayload)


# HTTP request bodies


class SendMessageRequest(BaseModel):
    text: str = ""
    images: List[InlineData] = Field(default_factory=list)
    audio: Optional[InlineData] = None
    text_attachment: Optional[TextAttachment] = None
    model: Optional[str] = None


class EditMessageRequest(BaseModel):
    text: str


class ChangeVersionRequest(BaseModel):
    index: int


class ConversationPatch(BaseModel):
    title: Optional[str] = None
    is_pinned: Optional[bool] = None
    model: Optional[str] = None


class ForkRequest(BaseModel):
    message_id: str


class ContentCreate(BaseModel):
    content: str


class RegisterRequest(BaseModel):
    name: str
    email: str
    password: str


class LoginRequest(BaseModel):
    email: str
    password: str


class CloudConnectRequest(BaseModel):
    account: str
