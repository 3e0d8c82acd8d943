from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter

from vnqueue.schemas.queue_entry import QueueEntry


class SubscribeMessage(BaseModel):
    type: Literal["subscribe"] = "subscribe"
    vn: str


class QueueUpdateMessage(BaseModel):
    type: Literal["queue_update"]
    data: QueueEntry


class SubscribedMessage(BaseModel):
    type: Literal["subscribed"]
    vn: Optional[str] = None


ServerMessage = Annotated[
    Union[QueueUpdateMessage, SubscribedMessage],
    Field(discriminator="type"),
]

server_message_adapter = TypeAdapter(ServerMessage)

KNOWN_SERVER_MESSAGE_TYPES = {"queue_update", "subscribed"}
