"""Request body sent to the tutoring gateway."""

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from math_tutor_client.models.session import ChatMessage, GuidanceMode, MessageRole

_WIRE_ROLES: dict[MessageRole, str] = {
    MessageRole.STUDENT: "user",
    MessageRole.BOT: "assistant",
}


class WireMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class ChatRequest(BaseModel):
    """Body of the streaming POST."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    messages: list[WireMessage] = Field(default_factory=list)
    image_base64: str | None = None
    guidance_mode: GuidanceMode = GuidanceMode.GUIDED
    practice_mode: bool | None = None
    practice_topic: str | None = None

    def to_body(self) -> dict:
        body = self.model_dump(mode="json", by_alias=True, exclude_none=True)
        # imageBase64 is always present, possibly null
        body["imageBase64"] = self.image_base64
        return body


def build_chat_request(
    messages: list[ChatMessage],
    guidance_mode: GuidanceMode,
    image_base64: str | None = None,
    practice_topic: str | None = None,
) -> ChatRequest:
    """Build a gateway request from the session history.

    Args:
        messages: Conversation so far (student and bot messages).
        guidance_mode: Selected pacing mode.
        image_base64: Original problem image as a data URL, if any.
        practice_topic: Topic to generate a practice problem for.
    """
    request = ChatRequest(
        messages=[
            WireMessage(role=_WIRE_ROLES[m.role], content=m.content) for m in messages
        ],
        image_base64=image_base64,
        guidance_mode=guidance_mode,
    )
    if practice_topic:
        request.practice_mode = True
        request.practice_topic = practice_topic
    return request
