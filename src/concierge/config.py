"""Central configuration loaded from environment / .env file."""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings

_PROJECT_ROOT = Path(__file__).resolve().parents[2]

DEFAULT_SYSTEM_PROMPT = (
    "You are an AI assistant that helps people find information. \n\n"
    "- **DO NOT** include any citations, references, or doc links. \n"
    "- Only provide a brief response in 1 to 2 sentences unless asked otherwise."
)


class Settings(BaseSettings):
    """Application-wide settings, populated from env vars or .env file."""

    # Azure AI Speech (recognition + talking avatar)
    speech_region: str = Field(default="", alias="AZURE_SPEECH_REGION")
    speech_key: str = Field(default="", alias="AZURE_SPEECH_KEY")
    recognition_language_list: str = Field(
        default="en-US", alias="CONCIERGE_RECOGNITION_LANGUAGES",
        description="Comma-separated candidate languages for auto-detection",
    )

    # Talking avatar
    avatar_voice_name: str = Field(
        default="en-US-AvaMultilingualNeural", alias="CONCIERGE_AVATAR_VOICE"
    )
    avatar_character: str = Field(default="lisa", alias="CONCIERGE_AVATAR_CHARACTER")
    avatar_style: str = Field(default="casual-sitting", alias="CONCIERGE_AVATAR_STYLE")
    avatar_background_color: str = Field(
        default="#FFFFFFFF", alias="CONCIERGE_AVATAR_BACKGROUND"
    )
    avatar_crop_left: int = 600
    avatar_crop_top: int = 50
    avatar_crop_right: int = 1320
    avatar_crop_bottom: int = 1080
    avatar_video_sink: str = Field(
        default="", alias="CONCIERGE_AVATAR_VIDEO_SINK",
        description="File to record avatar video into; empty discards frames",
    )
    avatar_audio_sink: str = Field(
        default="", alias="CONCIERGE_AVATAR_AUDIO_SINK",
        description="File to record avatar audio into; empty discards samples",
    )

    # Azure OpenAI
    openai_endpoint: str = Field(default="", alias="AZURE_OPENAI_ENDPOINT")
    openai_api_key: str = Field(default="", alias="AZURE_OPENAI_API_KEY")
    openai_api_version: str = Field(
        default="2024-02-15-preview", alias="AZURE_OPENAI_API_VERSION"
    )
    chat_deployment: str = Field(default="", alias="AZURE_OPENAI_DEPLOYMENT_NAME")
    router_deployment: str = Field(
        default="", alias="AZURE_OPENAI_ROUTER_DEPLOYMENT_NAME",
        description="Classification deployment; falls back to the chat deployment",
    )
    router_max_tokens: int = Field(default=5, alias="CONCIERGE_ROUTER_MAX_TOKENS")
    router_history_turns: int = Field(default=4, alias="CONCIERGE_ROUTER_HISTORY_TURNS")

    # Conversation
    system_prompt: str = Field(default=DEFAULT_SYSTEM_PROMPT, alias="CONCIERGE_SYSTEM_PROMPT")
    history_limit: int = Field(default=20, alias="CONCIERGE_HISTORY_LIMIT")

    # Retrieval sources
    sources_path: Path = Field(
        default=_PROJECT_ROOT / "sources.json", alias="CONCIERGE_SOURCES_PATH"
    )
    search_endpoint: str = Field(default="", alias="AZURE_SEARCH_ENDPOINT")
    search_key: str = Field(default="", alias="AZURE_SEARCH_KEY")
    search_index: str = Field(default="", alias="AZURE_SEARCH_INDEX")

    # Networking
    http_timeout: float = Field(default=30.0, alias="CONCIERGE_HTTP_TIMEOUT")

    # Logging
    log_level: str = Field(default="INFO", alias="CONCIERGE_LOG_LEVEL")

    model_config = {
        "env_file": str(_PROJECT_ROOT / ".env"),
        "env_file_encoding": "utf-8",
        "extra": "ignore",
        "populate_by_name": True,
    }

    # Derived endpoints
    @property
    def relay_token_url(self) -> str:
        """Region-scoped endpoint that issues short-lived ICE relay credentials."""
        return (
            f"https://{self.speech_region}.tts.speech.microsoft.com"
            "/cognitiveservices/avatar/relay/token/v1"
        )

    @property
    def avatar_endpoint(self) -> str:
        return (
            f"wss://{self.speech_region}.tts.speech.microsoft.com"
            "/cognitiveservices/websocket/v1?enableTalkingAvatar=true"
        )

    @property
    def recognition_languages(self) -> list[str]:
        return [lang.strip() for lang in self.recognition_language_list.split(",") if lang.strip()]

    @property
    def resolved_router_deployment(self) -> str:
        return self.router_deployment or self.chat_deployment

    @property
    def speech_available(self) -> bool:
        """True when speech recognition and the avatar can be provisioned."""
        return bool(self.speech_key and self.speech_region)

    @property
    def chat_available(self) -> bool:
        """True when the chat-completion endpoint is configured."""
        return bool(self.openai_endpoint and self.openai_api_key and self.chat_deployment)


def get_settings() -> Settings:
    """Return a cached Settings instance."""
    if not hasattr(get_settings, "_instance"):
        get_settings._instance = Settings()  # type: ignore[attr-defined]
    return get_settings._instance  # type: ignore[attr-defined]
