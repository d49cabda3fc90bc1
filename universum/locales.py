"""User-visible strings produced by the assistant core.

Only the English table ships with the core; other locales fall back to it key by key.
"""

from typing import Any, Callable, Dict, Union

Entry = Union[str, Callable[..., str]]

EN: Dict[str, Entry] = {
    "new_chat_title": "New Chat",
    "fork_title": lambda title: f"{title} (fork)",
    "toast_error_title": "Error",
    "toast_success_title": "Success",
    # Context preamble
    "current_date_time": lambda moment: f"The current date and time is {moment}.",
    "user_name": lambda name: f"The user's name is {name}.",
    "conversation_title_label": "Title",
    "image_chat_title": "Image Chat",
    "audio_chat_title": "Audio Chat",
    "unsupported_file_type": "Unsupported file type. Please upload an image or audio file.",
    "empty_message": "Message is empty.",
    "turn_in_progress": "A response is still being generated for this conversation.",
    "export_success": "Export successful!",
    # Turn outcomes
    "generation_stopped": "Generation stopped by user.",
    "api_key_error": "The API key is missing or invalid. Please check your configuration.",
    "network_error": "A network error occurred. Please check your connection and try again.",
    "unexpected_error": lambda details: f"An unexpected error occurred: {details}",
    "empty_response_placeholder": (
        "[The model did not provide a text response, but may have completed another action.]"
    ),
    # Tool placeholders
    "consulting_weather": "Consulting weather service... ☀️",
    "performing_action": lambda setting: f"Performing action: {setting}...",
    "opening_website": "Opening website...",
    "searching_youtube": lambda query: f'Searching YouTube for "{query}"...',
    # Artifact confirmations and progress
    "image_confirmation": "Here is the image I generated for you.",
    "document_confirmation": lambda filename: f'I\'ve created the document "{filename}". You can download it now.',
    "spreadsheet_confirmation": lambda filename: f'I\'ve prepared the spreadsheet "{filename}". You can download it now.',
    "presentation_confirmation": lambda filename: f'I\'ve designed the presentation "{filename}". You can download it now.',
    "generating_image": "Generating image...",
    "generating_pdf": "Generating PDF...",
    "generating_word": "Generating Word document...",
    "generating_sheets": lambda count: f"Generating {count} sheet(s)...",
    "generating_slides": lambda count: f"Generating {count} slide(s)...",
    "generating_slide_images": "Generating slide images...",
    "video_status_initializing": "Initializing video engine...",
    "video_status_generating": "Generating... this may take a few minutes.",
    "video_status_finalizing": "Finalizing video...",
    "video_no_download_link": "Video generation finished but no download link was provided.",
    "no_images_returned": "The API did not return any images.",
    # Artifact failures
    "image_error": "Sorry, I couldn't create the image",
    "video_error": "Sorry, I couldn't create the video",
    "pdf_error": "Sorry, I couldn't generate the PDF",
    "spreadsheet_error": "Sorry, I couldn't generate the spreadsheet",
    "presentation_error": "Sorry, I couldn't generate the presentation",
    "word_error": "Sorry, I couldn't generate the Word document",
    "slide_image_error": lambda index, details: f"Slide {index} image failed: {details}",
    # Memory and persistence
    "memory_title": "Memory",
    "memory_auto_saved": "Fact automatically saved to memory.",
    "data_load_error": "Your data could not be loaded and might be corrupted. A backup has been made.",
    "conversation_load_error": lambda name: f'Could not load conversation "{name}". It might be corrupted.',
    # Identity
    "login_error": "Invalid email or password.",
    "register_user_exists": "A user with this email already exists.",
    # Analysis steps
    "core_ingesting": "Ingesting & Understanding",
    "core_deconstructing": "Deconstructing Request",
    "core_strategizing": "Developing Strategy",
    "core_dispatching": "Dispatching Agents",
    "core_synthesizing": "Synthesizing Results",
    "core_finalizing": "Finalizing Response",
    "intent_label": "Intent",
    "domain_label": "Domain",
    "complexity_label": "Complexity",
    "strategy_label": "Strategy",
    "intent_conversation": "Conversation",
    "intent_information_retrieval": "Information Retrieval",
    "intent_content_creation": "Content Creation",
    "intent_problem_solving": "Problem Solving",
    "intent_data_analysis": "Data Analysis",
    "intent_code_development": "Code Development",
    "intent_creative_ideation": "Creative Ideation",
    "domain_general": "General",
    "domain_creative": "Creative",
    "domain_technical": "Technical",
    "domain_research": "Research",
    "domain_data_analysis": "Data Analysis",
    "domain_spreadsheet": "Spreadsheet",
    "domain_video": "Video",
    "domain_math": "Mathematics",
    "complexity_simple": "Simple",
    "complexity_moderate": "Moderate",
    "complexity_complex": "Complex",
    "strategy_standard": "Standard Response",
    "strategy_deep_search": "Deep Search",
    "strategy_code_interpreter": "Code Interpreter",
    "strategy_creative_suite": "Creative Suite",
    "strategy_spreadsheet_specialist": "Spreadsheet Specialist",
    "strategy_multi_agent_collaboration": "Multi-Agent Collaboration",
    "agent_deep_search": "Deep Search Agent",
    "agent_code_interpreter": "Code Interpreter Agent",
    "agent_creative_suite": "Creative Suite Agent",
    "agent_spreadsheet_specialist": "Spreadsheet Specialist Agent",
    "agent_task_pending": "Awaiting assignment...",
    "agent_task_initializing": "Initializing...",
    "agent_task_searching": "Searching web & databases...",
    "agent_task_coding": "Writing & testing code...",
    "agent_task_creative_writing": "Drafting creative content...",
    "agent_task_spreadsheet": "Building spreadsheet...",
}

TABLES: Dict[str, Dict[str, Entry]] = {"en": EN}


class Translator:
    def __init__(self, locale: str = "en"):
        self.locale = locale or "en"
        self.table = {**EN, **TABLES.get(self.locale, {})}

    def __call__(self, key: str, *args: Any) -> str:
        value = self.table.get(key)
        if value is None:
            return key
        if callable(value):
            return value(*args)
        return value
