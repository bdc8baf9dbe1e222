"""Voice input via Azure AI Speech continuous recognition."""

from concierge.interface.voice.stt import (
    RecognitionEvent,
    RecognitionState,
    SpeechInputController,
)

__all__ = ["RecognitionEvent", "RecognitionState", "SpeechInputController"]
