"""Conversational presence layer: voice input, talking avatar, session wiring.

Data flow::

    Microphone → Azure speech recognition → query text
      (or typed text)
      → DataSourceRouter (pick a retrieval source)
      → AnswerPipeline (chat completion grounded in that source)
      → ConversationStore.recognised_text
      → AvatarSession → markdown-to-speech → talking avatar over WebRTC
"""

__all__ = ["ConversationSession"]


def __getattr__(name: str):
    if name == "ConversationSession":
        from concierge.interface.session import ConversationSession
        return ConversationSession
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
