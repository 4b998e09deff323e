from typing import TypedDict

from lms_assistant.schemas.chat import ChatContext, ChatResult, Identity, IntentClassification


class ChatState(TypedDict, total=False):
    message: str
    identity: Identity
    context: ChatContext
    classification: IntentClassification
    result: ChatResult
    denied: bool
    events: list[dict]
