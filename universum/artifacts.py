"""Artifact subroutines run after the action interpreter hands a message off.

Each one moves the message from ``pending_artifact`` to either an attached ``artifact`` or an
appended error line. Binary encoding stays with the ``ArtifactEncoder``.
"""

import asyncio
import base64
import copy
import logging
import re
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel

from .cancellation import CancelToken, TurnCancelled
from .config import AppSettings
from .events import EventBus
from .locales import Translator
from .llm import GenerationError
from .mutator import append_to_active, clear_in_flight, evolve, make_message
from .schemas import (
    ArtifactProgress,
    EncodedFile,
    ImageAction,
    ImageArtifact,
    Message,
    PdfAction,
    PdfArtifact,
    PdfDocument,
    PresentationAction,
    PresentationArtifact,
    PresentationDeck,
    SpreadsheetAction,
    SpreadsheetArtifact,
    VideoAction,
    VideoArtifact,
    WordAction,
    WordArtifact,
    WordDocument,
    WordParagraph,
    WordRun,
)
from .store import ConversationStore

logger = logging.getLogger("uvicorn.error")

TOC_RE = re.compile(r"(?:^#+\s*(?:Table of Contents|Inhaltsverzeichnis)[\s\S]*?)(?=\n#+|$)", re.IGNORECASE)
HEADER_TITLE_MAX = 80
DEFAULT_SPREADSHEET_FILENAME = "universum_spreadsheet.xlsx"
DEFAULT_PRESENTATION_FILENAME = "universum_presentation.pptx"
NOT_FOUND_ERROR = "Requested entity was not found."
MAX_IMAGES = 4

ALIGNMENTS = {"CENTER": "center", "END": "end", "RIGHT": "end", "JUSTIFY": "justify"}

ACTION_KINDS = {
    "generate_image": "image",
    "generate_pdf": "pdf",
    "generate_spreadsheet": "spreadsheet",
    "generate_presentation": "presentation",
    "generate_word": "word",
    "generate_video": "video",
}
ERROR_KEYS = {
    "image": "image_error",
    "pdf": "pdf_error",
    "spreadsheet": "spreadsheet_error",
    "presentation": "presentation_error",
    "word": "word_error",
    "video": "video_error",
}


class ArtifactEncoder:
    """Turns an artifact description into a downloadable file."""

    async def encode(self, kind: str, description: BaseModel) -> Optional[EncodedFile]:
        raise NotImplementedError


class DescriptionEncoder(ArtifactEncoder):
    """Leaves encoding to the client, which renders from the stored description."""

    async def encode(self, kind: str, description: BaseModel) -> Optional[EncodedFile]:
        return None


def header_title(title: str) -> str:
    if len(title) > HEADER_TITLE_MAX:
        return title[: HEADER_TITLE_MAX - 3] + "..."
    return title


def split_toc(content: str) -> Tuple[str, str]:
    match = TOC_RE.search(content)
    if not match:
        return "", content
    toc = match.group(0)
    return toc, content.replace(toc, "", 1).strip()


def build_pdf_document(action: PdfAction) -> PdfDocument:
    toc, body = split_toc(action.content)
    return PdfDocument(
        filename=action.filename,
        title=action.title,
        header_title=header_title(action.title),
        toc_markdown=toc,
        body_markdown=body,
    )


def _alignment(value: Any) -> str:
    if not isinstance(value, str):
        return "start"
    return ALIGNMENTS.get(value.upper(), "start")


def _word_paragraph(item: Any) -> Optional[WordParagraph]:
    if not isinstance(item, dict):
        return None
    spacing = item.get("spacing") if isinstance(item.get("spacing"), dict) else {}
    before = spacing.get("before")
    after = spacing.get("after")
    kind = str(item.get("type") or "")
    paragraph_type = "paragraph"
    runs: List[WordRun] = []
    if kind.startswith("heading"):
        level = kind.replace("heading", "")
        if level == "1":
            paragraph_type = "heading1"
        elif level == "2":
            paragraph_type = "heading2"
        runs.append(WordRun(text=str(item.get("text") or "")))
    elif kind == "bullet":
        paragraph_type = "bullet"
        runs.append(WordRun(text=str(item.get("text") or "")))
    elif isinstance(item.get("children"), list):
        for child in item["children"]:
            if not isinstance(child, dict):
                continue
            style = child.get("style") if isinstance(child.get("style"), dict) else {}
            size = style.get("size")
            runs.append(
                WordRun(
                    text=str(child.get("text") or ""),
                    bold=bool(style.get("bold")),
                    italic=bool(style.get("italic")),
                    color=style.get("color") or None,
                    size=size if isinstance(size, int) and not isinstance(size, bool) else None,
                )
            )
    elif item.get("text"):
        runs.append(WordRun(text=str(item["text"])))
    if not runs:
        return None
    return WordParagraph(
        type=paragraph_type,
        runs=runs,
        alignment=_alignment(item.get("alignment")),
        spacing_before=before if isinstance(before, int) and not isinstance(before, bool) else None,
        spacing_after=after if isinstance(after, int) and not isinstance(after, bool) else None,
    )


def build_word_document(action: WordAction) -> WordDocument:
    theme = action.theme or {}
    font = theme.get("font") or "Calibri"
    paragraphs = [p for p in (_word_paragraph(item) for item in action.content) if p is not None]
    return WordDocument(
        filename=action.filename,
        font=font,
        primary_color=theme.get("primaryColor") or "2E74B5",
        paragraphs=paragraphs,
    )


def slides_needing_images(slides: List[Dict[str, Any]]) -> List[int]:
    indexes = []
    for index, slide in enumerate(slides):
        image = slide.get("image") if isinstance(slide, dict) else None
        if isinstance(image, dict) and image.get("prompt") and not image.get("data"):
            indexes.append(index)
    return indexes


def initial_progress(action: BaseModel, t: Translator) -> ArtifactProgress:
    if isinstance(action, ImageAction):
        return ArtifactProgress(kind="image", status=t("generating_image"), count=action.count)
    if isinstance(action, PdfAction):
        return ArtifactProgress(kind="pdf", status=t("generating_pdf"), filename=action.filename)
    if isinstance(action, SpreadsheetAction):
        count = len(action.sheets)
        return ArtifactProgress(
            kind="spreadsheet", status=t("generating_sheets", count), filename=action.filename, count=count
        )
    if isinstance(action, PresentationAction):
        count = len(action.data.slides)
        return ArtifactProgress(
            kind="presentation",
            status=t("generating_slides", count),
            phase="slides",
            filename=action.filename,
            count=count,
        )
    if isinstance(action, WordAction):
        return ArtifactProgress(kind="word", status=t("generating_word"), filename=action.filename)
    return ArtifactProgress(kind="video", status=t("video_status_initializing"))


class ArtifactGenerator:
    def __init__(
        self,
        generation: Any,
        store: ConversationStore,
        bus: EventBus,
        t: Translator,
        settings: AppSettings,
        encoder: Optional[ArtifactEncoder] = None,
    ):
        self.generation = generation
        self.store = store
        self.bus = bus
        self.t = t
        self.settings = settings
        self.encoder = encoder or DescriptionEncoder()
        self.handlers: Dict[str, Callable[..., Awaitable[None]]] = {
            "image": self.generate_image,
            "pdf": self.generate_pdf,
            "spreadsheet": self.generate_spreadsheet,
            "presentation": self.generate_presentation,
            "word": self.generate_word,
            "video": self.generate_video,
        }

    def _update(self, conversation_id: str, message_id: str, updater: Callable[[Message], Message]) -> None:
        self.store.update_message(conversation_id, message_id, updater)

    def _progress(self, conversation_id: str, message_id: str, **changes: Any) -> None:
        def apply(message: Message) -> Message:
            if message.artifact_progress is None:
                return message
            return evolve(message, artifact_progress=message.artifact_progress.model_copy(update=changes))

        self._update(conversation_id, message_id, apply)

    def _attach(self, conversation_id: str, message_id: str, artifact: BaseModel) -> None:
        self._update(conversation_id, message_id, lambda m: clear_in_flight(m, artifact=artifact))

    def _fail(self, conversation_id: str, message_id: str, kind: str, exc: Exception) -> None:
        logger.warning("%s generation failed for message %s: %s", kind, message_id, exc)
        error_text = f"{self.t(ERROR_KEYS[kind])}: {exc}"
        self._update(conversation_id, message_id, lambda m: append_to_active(clear_in_flight(m), error_text))

    def _stopped(self, conversation_id: str, message_id: str, kind: str) -> None:
        if kind == "video":
            stopped = make_message("system", self.t("generation_stopped"))
            self._update(conversation_id, message_id, lambda _m: stopped)
        else:
            self._update(conversation_id, message_id, clear_in_flight)

    async def run(self, action: BaseModel, conversation_id: str, message_id: str, token: CancelToken) -> None:
        kind = ACTION_KINDS[action.action]
        try:
            await self.handlers[kind](action, conversation_id, message_id, token)
        except TurnCancelled:
            logger.info("%s generation stopped for message %s", kind, message_id)
            self._stopped(conversation_id, message_id, kind)
        except asyncio.CancelledError:
            logger.info("%s generation task cancelled for message %s", kind, message_id)
            self._stopped(conversation_id, message_id, kind)
            raise
        except Exception as exc:
            self._fail(conversation_id, message_id, kind, exc)

    async def generate_image(self, action: ImageAction, conversation_id: str, message_id: str, token: CancelToken) -> None:
        count = max(1, min(action.count, MAX_IMAGES))
        images = await self.generation.generate_images(self.settings.models.image, action.prompt, count)
        if not images:
            raise GenerationError(self.t("no_images_returned"))
        self._attach(conversation_id, message_id, ImageArtifact(images=images))

    async def generate_pdf(self, action: PdfAction, conversation_id: str, message_id: str, token: CancelToken) -> None:
        document = build_pdf_document(action)
        encoded = await self.encoder.encode("pdf", document)
        self._attach(conversation_id, message_id, PdfArtifact(document=document, file=encoded))
        self.bus.toast(self.t("document_confirmation", action.filename), "success", self.t("toast_success_title"))

    async def generate_spreadsheet(
        self, action: SpreadsheetAction, conversation_id: str, message_id: str, token: CancelToken
    ) -> None:
        await token.sleep(self.settings.artifacts.spreadsheet_delay_s)
        artifact = SpreadsheetArtifact(filename=action.filename or DEFAULT_SPREADSHEET_FILENAME, sheets=action.sheets)
        artifact.file = await self.encoder.encode("spreadsheet", artifact)
        self._attach(conversation_id, message_id, artifact)

    async def generate_presentation(
        self, action: PresentationAction, conversation_id: str, message_id: str, token: CancelToken
    ) -> None:
        deck_data = action.data.model_dump()
        slides = copy.deepcopy(deck_data.get("slides") or [])
        pending = slides_needing_images(slides)
        if pending:
            self._progress(conversation_id, message_id, phase="slide_images", status=self.t("generating_slide_images"))
        for position, index in enumerate(pending):
            if token.cancelled:
                logger.info("Slide image generation stopped for message %s", message_id)
                break
            image = slides[index]["image"]
            try:
                generated = await self.generation.generate_images(self.settings.models.slide_image, image["prompt"], 1)
                if generated:
                    image["data"] = generated[0].data
                    image["mimeType"] = generated[0].mime_type
            except Exception as exc:
                logger.warning("Slide %s image failed: %s", index + 1, exc)
                self.bus.toast(self.t("slide_image_error", index + 1, exc), "error")
            if position < len(pending) - 1 and not token.cancelled:
                try:
                    await token.sleep(self.settings.artifacts.presentation_image_delay_s)
                except TurnCancelled:
                    break
        deck_data["slides"] = slides
        artifact = PresentationArtifact(
            filename=action.filename or DEFAULT_PRESENTATION_FILENAME,
            deck=PresentationDeck.model_validate(deck_data),
        )
        artifact.file = await self.encoder.encode("presentation", artifact)
        self._attach(conversation_id, message_id, artifact)

    async def generate_word(self, action: WordAction, conversation_id: str, message_id: str, token: CancelToken) -> None:
        document = build_word_document(action)
        encoded = await self.encoder.encode("word", document)
        self._attach(conversation_id, message_id, WordArtifact(document=document, file=encoded))

    async def generate_video(self, action: VideoAction, conversation_id: str, message_id: str, token: CancelToken) -> None:
        if not self.generation.has_video_access():
            self._update(conversation_id, message_id, lambda m: clear_in_flight(m, requires_key_selection=True))
            return
        self._progress(conversation_id, message_id, status=self.t("video_status_generating"))
        try:
            operation = await self.generation.start_video(self.settings.models.video, action.prompt, action.aspect_ratio)
            while not operation.done:
                await token.sleep(self.settings.artifacts.video_poll_interval_s)
                operation = await self.generation.poll_video(operation)
            if operation.error:
                raise GenerationError(operation.error)
            if not operation.uri:
                raise GenerationError(self.t("video_no_download_link"))
            self._progress(conversation_id, message_id, status=self.t("video_status_finalizing"))
            data, mime_type = await self.generation.download(operation.uri)
            token.raise_if_cancelled()
        except GenerationError as exc:
            if NOT_FOUND_ERROR in str(exc):
                self._update(conversation_id, message_id, lambda m: clear_in_flight(m, requires_key_selection=True))
                return
            raise
        mime_type = (mime_type or "video/mp4").split(";")[0].strip()
        encoded = base64.b64encode(data).decode("ascii")
        artifact = VideoArtifact(mime_type=mime_type, data_url=f"data:{mime_type};base64,{encoded}")
        self._attach(conversation_id, message_id, artifact)
