from typing import Optional, Set

import structlog

from ..config import CSAT_COMMENT_MAX
from ..errors import CsatError
from ..schemas import RoomOut

logger = structlog.get_logger(__name__)


class CsatCollector:
    """One rating per room: a single write of score + comment, or a skip that writes nothing."""

    def __init__(self, store, comment_max: int = CSAT_COMMENT_MAX):
        self.store = store
        self.comment_max = comment_max
        self._answered: Set[int] = set()

    def validate(self, score: int, comment: Optional[str]):
        if not isinstance(score, int) or isinstance(score, bool) or not 1 <= score <= 5:
            raise CsatError("Escolha uma nota de 1 a 5")
        comment = (comment or "").strip()[:self.comment_max]
        return score, comment or None

    async def submit(self, room_id: int, score: int, comment: Optional[str] = None) -> RoomOut:
        if room_id in self._answered:
            raise CsatError("Esta conversa já foi avaliada")
        score, comment = self.validate(score, comment)
        room = await self.store.set_csat(room_id, score, comment)
        self._answered.add(room_id)
        logger.info("CSAT submitted", room_id=room_id, score=score)
        return room

    async def skip(self, room_id: int) -> None:
        if room_id in self._answered:
            raise CsatError("Esta conversa já foi avaliada")
        self._answered.add(room_id)
        logger.info("CSAT skipped", room_id=room_id)
