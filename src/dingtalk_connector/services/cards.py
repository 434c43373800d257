"""AI card lifecycle: create, deliver, stream content, finish.

A card moves through ``CREATED -> DELIVERED -> INPUTING -> STREAMING ->
FINISHED``. The first content write must be preceded by a switch into the
INPUTING state, otherwise the client may not render the streamed text.
Finishing takes two calls because the streaming channel and the card's
status fields are updated through separate endpoints.
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from .dingtalk_api import DingTalkAPI, DingTalkAPIError
from .targets import DeliveryTarget, GroupTarget

logger = logging.getLogger(__name__)

CARD_UPDATE_INTERVAL_SECONDS = 0.3
CARD_INSTANCES_PATH = "/v1.0/card/instances"
CARD_DELIVER_PATH = "/v1.0/card/instances/deliver"
CARD_STREAMING_PATH = "/v1.0/card/streaming"
CONTENT_KEY = "msgContent"


class CardStatus(str, Enum):
    """``flowStatus`` values; the card param map only accepts strings."""

    PROCESSING = "1"
    INPUTING = "2"
    FINISHED = "3"
    EXECUTING = "4"
    FAILED = "5"


@dataclass
class CardInstance:
    card_instance_id: str
    access_token: str
    inputing_started: bool = False


def _status_params(status: CardStatus, content: str) -> dict[str, Any]:
    return {
        "cardParamMap": {
            "flowStatus": status.value,
            CONTENT_KEY: content,
            "staticMsgContent": "",
            # Only declare the field in use so clients skip empty placeholders
            "sys_full_json_obj": json.dumps({"order": [CONTENT_KEY]}),
        }
    }


class AICardController:
    """Issue the card API calls for one robot account."""

    def __init__(self, api: DingTalkAPI) -> None:
        self._api = api

    def _deliver_body(self, card_instance_id: str, target: DeliveryTarget) -> dict[str, Any]:
        body: dict[str, Any] = {"outTrackId": card_instance_id, "userIdType": 1}
        if isinstance(target, GroupTarget):
            body["openSpaceId"] = f"dtv1.card//IM_GROUP.{target.conversation_id}"
            body["imGroupOpenDeliverModel"] = {"robotCode": self._api.robot_code}
        else:
            body["openSpaceId"] = f"dtv1.card//IM_ROBOT.{target.user_id}"
            body["imRobotOpenDeliverModel"] = {"spaceType": "IM_ROBOT"}
        return body

    async def create(self, target: DeliveryTarget) -> Optional[CardInstance]:
        """Create and deliver an empty card; ``None`` means use a plain message."""

        card_instance_id = f"card_{uuid.uuid4().hex}"
        try:
            token = await self._api.access_token()
            logger.info(
                "Creating AI card for %s, outTrackId=%s",
                target.describe(),
                card_instance_id,
            )
            await self._api.request(
                "POST",
                CARD_INSTANCES_PATH,
                {
                    "cardTemplateId": self._api.settings.card_template_id,
                    "outTrackId": card_instance_id,
                    "cardData": {"cardParamMap": {}},
                    "callbackType": "STREAM",
                    "imGroupOpenSpaceModel": {"supportForward": True},
                    "imRobotOpenSpaceModel": {"supportForward": True},
                },
                token=token,
            )
            await self._api.request(
                "POST",
                CARD_DELIVER_PATH,
                self._deliver_body(card_instance_id, target),
                token=token,
            )
        except Exception as exc:
            logger.error("AI card creation failed for %s: %s", target.describe(), exc)
            return None
        return CardInstance(card_instance_id=card_instance_id, access_token=token)

    async def update(self, card: CardInstance, content: str, *, finished: bool = False) -> None:
        """Replace the card text; raises `DingTalkAPIError` on failure."""

        if not card.inputing_started:
            logger.info("Switching card %s to INPUTING", card.card_instance_id)
            await self._api.request(
                "PUT",
                CARD_INSTANCES_PATH,
                {
                    "outTrackId": card.card_instance_id,
                    "cardData": _status_params(CardStatus.INPUTING, ""),
                },
                token=card.access_token,
            )
            card.inputing_started = True

        body = {
            "outTrackId": card.card_instance_id,
            "guid": uuid.uuid4().hex,
            "key": CONTENT_KEY,
            "content": content,
            "isFull": True,
            "isFinalize": finished,
            "isError": False,
        }
        logger.debug(
            "Streaming card %s len=%d finalize=%s",
            card.card_instance_id,
            len(content),
            finished,
        )
        await self._api.request(
            "PUT", CARD_STREAMING_PATH, body, token=card.access_token
        )

    async def finalize(self, card: CardInstance, content: str) -> None:
        """Close the stream with ``content`` and mark the card FINISHED."""

        logger.info(
            "Finishing card %s, final length=%d", card.card_instance_id, len(content)
        )
        await self.update(card, content, finished=True)
        try:
            await self._api.request(
                "PUT",
                CARD_INSTANCES_PATH,
                {
                    "outTrackId": card.card_instance_id,
                    "cardData": _status_params(CardStatus.FINISHED, content),
                },
                token=card.access_token,
            )
        except DingTalkAPIError as exc:
            logger.error(
                "FINISHED status update failed for %s: %s", card.card_instance_id, exc
            )


class CardStreamWriter:
    """Rate-limit content writes to one card.

    The first write and the final write always go out; anything in between is
    dropped when it arrives less than ``interval`` seconds after the last one.
    """

    def __init__(
        self,
        controller: AICardController,
        card: CardInstance,
        *,
        interval: float = CARD_UPDATE_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._controller = controller
        self.card = card
        self._interval = interval
        self._clock = clock
        self._last_update: Optional[float] = None
        self._finalized = False
        self.updates_sent = 0

    @property
    def finalized(self) -> bool:
        return self._finalized

    async def push(self, content: str) -> bool:
        """Write ``content`` unless throttled; returns whether a call was made."""

        now = self._clock()
        if self._last_update is not None and now - self._last_update < self._interval:
            return False
        await self._controller.update(self.card, content)
        self._last_update = now
        self.updates_sent += 1
        return True

    async def finalize(self, content: str) -> None:
        if self._finalized:
            logger.warning("Card %s already finalized", self.card.card_instance_id)
            return
        await self._controller.finalize(self.card, content)
        self._finalized = True


__all__ = [
    "AICardController",
    "CARD_UPDATE_INTERVAL_SECONDS",
    "CardInstance",
    "CardStatus",
    "CardStreamWriter",
]
