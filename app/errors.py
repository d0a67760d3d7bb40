class ChatbotError(Exception):
    """Base class for errors raised inside the chatbot service."""


class NotConfigured(ChatbotError):
    """A required upstream (LLM, catalog, vector index) has no credentials."""

    def __init__(self, component: str):
        super().__init__(f"{component} is not configured")
        self.component = component


class MalformedRecord(ChatbotError):
    """A raw catalog record could not be turned into a Product."""


class UpstreamError(ChatbotError):
    """An upstream API call failed (transport error or bad status)."""
