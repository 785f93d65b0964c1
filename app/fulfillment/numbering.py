from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass, replace

from sqlalchemy import select, update

import app.persistence.pg as pg
from app.core.config import get_settings
from app.domain.orders.aggregates import Environment
from app.persistence.models import OrderSequenceModel

logger = logging.getLogger(__name__)

# One counter per environment; the lock serialises increments within a process,
# the conditional UPDATE keeps them exclusive across processes.
_ALLOCATION_LOCK = threading.Lock()

_ORDER_NUMBER_RE = re.compile(r"^(?P<prefix>[A-Z]+)(?P<sequence>\d+)(?P<shipments>\d)$")


@dataclass(frozen=True)
class OrderNumber:
    prefix: str
    sequence: int
    width: int
    shipments: int = 0

    @property
    def base(self) -> str:
        """Prefix plus padded sequence; never changes once allocated."""
        return f"{self.prefix}{self.sequence:0{self.width}d}"

    def with_shipments(self, shipments: int) -> OrderNumber:
        if not 0 <= shipments <= 9:
            raise ValueError(f"shipment suffix must be a single digit, got {shipments}")
        return replace(self, shipments=shipments)

    def __str__(self) -> str:
        return f"{self.base}{self.shipments}"

    @classmethod
    def parse(cls, value: str, width: int | None = None) -> OrderNumber:
        match = _ORDER_NUMBER_RE.match(value or "")
        if not match:
            raise ValueError(f"not an order number: {value!r}")
        digits = match.group("sequence")
        if width is not None and len(digits) != width:
            raise ValueError(f"order number {value!r} does not use width {width}")
        return cls(
            prefix=match.group("prefix"),
            sequence=int(digits),
            width=len(digits),
            shipments=int(match.group("shipments")),
        )


class OrderNumberAllocator:
    def allocate(self, environment: Environment | str) -> OrderNumber:
        env = Environment(environment)
        settings = get_settings()
        with _ALLOCATION_LOCK:
            with pg.session_scope() as session:
                sequence = self._next_value(session, env.value)
        number = OrderNumber(
            prefix=settings.order_number_prefix(env.value),
            sequence=sequence,
            width=settings.order_number_width,
        )
        logger.info("allocated order number %s environment=%s", number, env.value)
        return number

    def current(self, environment: Environment | str) -> int:
        env = Environment(environment)
        with pg.session_scope() as session:
            value = session.scalar(
                select(OrderSequenceModel.last_value).where(OrderSequenceModel.environment == env.value)
            )
        return int(value or 0)

    def _next_value(self, session, environment: str) -> int:
        row = session.get(OrderSequenceModel, environment)
        if row is None:
            session.add(OrderSequenceModel(environment=environment, last_value=0))
            session.flush()
        while True:
            current = session.scalar(
                select(OrderSequenceModel.last_value).where(OrderSequenceModel.environment == environment)
            )
            result = session.execute(
                update(OrderSequenceModel)
                .where(OrderSequenceModel.environment == environment)
                .where(OrderSequenceModel.last_value == current)
                .values(last_value=current + 1)
            )
            if result.rowcount == 1:
                return int(current) + 1
            # Another process won the race on this value; read again.
            session.expire_all()
