from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from order_engine.core.logging_config import get_logger
from order_engine.domain.models import InvoiceSequence
from order_engine.infrastructure.db import INVOICE_SEQUENCE_NAME
from .errors import Contention

logger = get_logger(__name__)


class InvoiceSequencer:
    """Hands out invoice codes from a counter row in the caller's transaction.

    The increment is a single ``UPDATE ... SET next_value = next_value + 1``,
    which takes the row's write lock before the new value is read back, so two
    open transactions can never be given the same number. A rolled-back
    placement returns its number with the rollback.
    """

    def __init__(self, db: Session, prefix: str, start: int, name: str = INVOICE_SEQUENCE_NAME):
        self.db = db
        self.prefix = prefix
        self.start = start
        self.name = name

    def next(self) -> str:
        result = self.db.execute(
            update(InvoiceSequence)
            .where(InvoiceSequence.name == self.name)
            .values(next_value=InvoiceSequence.next_value + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            value, prefix = self._create_counter()
        else:
            row = self.db.execute(
                select(InvoiceSequence.prefix, InvoiceSequence.next_value)
                .where(InvoiceSequence.name == self.name)
            ).one()
            prefix, value = row.prefix, row.next_value - 1
        code = f"{prefix}{value}"
        logger.info(f"Allocated invoice code {code}")
        return code

    def _create_counter(self):
        logger.info(f"Invoice counter {self.name!r} missing; starting at {self.start}")
        self.db.add(InvoiceSequence(name=self.name, prefix=self.prefix, next_value=self.start + 1))
        try:
            self.db.flush()
        except IntegrityError as exc:
            # Another transaction created the row first; the caller retries
            raise Contention() from exc
        return self.start, self.prefix
