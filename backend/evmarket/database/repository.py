"""
Shared repository plumbing.

Repositories commit each write on their own so that a flow's steps are
individually durable (a crash between "create pending booking" and "attach
gateway id" leaves a reconcilable pending row). Uniqueness violations are
surfaced as ``DuplicateRecordError`` because callers rely on them to detect
races. Other integrity failures (CHECK, foreign key, NOT NULL) are bugs
rather than races and become ``ConstraintViolationError``; every other
database failure becomes ``RepositoryError``.
"""

from typing import Any, Collection, Mapping, Optional, TypeVar

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql import Executable

from evmarket.core.logging import get_logger
from evmarket.database.base import Base

logger = get_logger(__name__)

ModelT = TypeVar("ModelT", bound=Base)


class RepositoryError(Exception):
    """Base exception for repository errors."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.context = context


class DuplicateRecordError(RepositoryError):
    """A uniqueness constraint rejected the write."""

    pass


class ConstraintViolationError(RepositoryError):
    """A non-uniqueness integrity constraint rejected the write."""

    pass


UNIQUE_VIOLATION = "23505"


def is_unique_violation(error: IntegrityError) -> bool:
    """Tell a duplicate key apart from other integrity failures by SQLSTATE."""
    orig = error.orig
    for source in (orig, getattr(orig, "__cause__", None)):
        code = getattr(source, "sqlstate", None) or getattr(source, "pgcode", None)
        if code:
            return code == UNIQUE_VIOLATION
    # Drivers without SQLSTATE (sqlite) only say so in the message.
    return "unique" in str(orig if orig is not None else error).lower()


class BaseRepository:
    """
    Common helpers for async SQLAlchemy repositories.

    Subclasses set ``model`` (and ``pk_column`` when the primary key is not
    ``id``) to get ``get_by_id``, ``update`` and ``update_if``.

    Attributes:
        session: Async database session for executing queries
    """

    model: type[Base]
    pk_column: str = "id"

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, pk: Any) -> Optional[Any]:
        try:
            return await self.session.get(self.model, pk, populate_existing=True)
        except SQLAlchemyError as e:
            logger.error(
                "Failed to load record",
                model=self.model.__name__,
                pk=str(pk),
                error=str(e),
            )
            raise RepositoryError("get_by_id failed", model=self.model.__name__) from e

    async def update(self, pk: Any, **changes: Any) -> bool:
        """Unconditional update of one row; False when the row is gone."""
        return await self.update_if(pk, None, **changes)

    async def update_if(
        self,
        pk: Any,
        conditions: Optional[Mapping[str, Any]],
        **changes: Any,
    ) -> bool:
        """
        Update one row only while ``conditions`` still hold.

        ``conditions`` values that are collections (other than strings) become
        ``IN`` filters; ``None`` becomes ``IS NULL``. The single ``UPDATE ...
        WHERE`` statement is the unit of atomicity, so two concurrent callers
        can never both match the same guarded transition.

        Returns:
            True if exactly one row matched and was updated
        """
        model = self.model
        stmt = update(model).where(getattr(model, self.pk_column) == pk)
        for column, expected in (conditions or {}).items():
            attr = getattr(model, column)
            if expected is None:
                stmt = stmt.where(attr.is_(None))
            elif isinstance(expected, Collection) and not isinstance(expected, str):
                stmt = stmt.where(attr.in_(list(expected)))
            else:
                stmt = stmt.where(attr == expected)
        stmt = stmt.values(**changes).execution_options(synchronize_session=False)

        matched = await self._execute_write(
            stmt, f"update_{model.__tablename__}", pk=str(pk)
        ) == 1
        logger.debug(
            "Conditional update executed",
            model=model.__name__,
            pk=str(pk),
            matched=matched,
        )
        return matched

    async def _add(self, instance: ModelT, operation: str, **context: Any) -> ModelT:
        self.session.add(instance)
        await self._commit(operation, **context)
        return instance

    async def _execute_write(
        self, stmt: Executable, operation: str, **context: Any
    ) -> int:
        """Execute an UPDATE/DELETE, commit, and return the affected row count."""
        try:
            result = await self.session.execute(stmt)
        except IntegrityError as e:
            await self.session.rollback()
            raise self._integrity_error(e, operation, **context) from e
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(
                "Database write failed",
                operation=operation,
                error=str(e),
                error_type=type(e).__name__,
                **context,
            )
            raise RepositoryError(f"{operation} failed", **context) from e

        await self._commit(operation, **context)
        return result.rowcount

    async def _commit(self, operation: str, **context: Any) -> None:
        try:
            await self.session.commit()
        except IntegrityError as e:
            await self.session.rollback()
            raise self._integrity_error(e, operation, **context) from e
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(
                "Database commit failed",
                operation=operation,
                error=str(e),
                error_type=type(e).__name__,
                **context,
            )
            raise RepositoryError(
                f"{operation} failed",
                operation=operation,
                **context,
            ) from e

    def _integrity_error(
        self, error: IntegrityError, operation: str, **context: Any
    ) -> RepositoryError:
        detail = str(error.orig) if error.orig else str(error)
        if is_unique_violation(error):
            logger.info(
                "Write rejected by uniqueness constraint",
                operation=operation,
                error=detail,
                **context,
            )
            return DuplicateRecordError(
                f"{operation} failed - duplicate record",
                operation=operation,
                **context,
            )
        logger.error(
            "Write rejected by integrity constraint",
            operation=operation,
            error=detail,
            **context,
        )
        return ConstraintViolationError(
            f"{operation} failed - constraint violation",
            operation=operation,
            **context,
        )
