from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.services.errors import InsufficientAtomicity

logger = logging.getLogger(__name__)


@contextmanager
def atomic(db: Session, *, operation: str) -> Iterator[Session]:
    """
    Frontière transactionnelle d'UNE opération métier.

    - sortie normale  -> COMMIT
    - toute exception -> ROLLBACK (rien de partiel n'est persisté)
    - SQLAlchemyError -> InsufficientAtomicity (rejouable)
    """
    try:
        yield db
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("transaction %s rolled back", operation)
        raise InsufficientAtomicity(
            f"{operation} failed and was rolled back, retry the operation",
            details={"operation": operation},
        ) from exc
    except BaseException:
        db.rollback()
        raise
