"""
Backend Selection Service - Which external project an account's queries go to.

Populating the selection (OAuth, project creation) belongs to the
surrounding system; this service only stores, resolves and clears it.
"""

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import settings
from app.db.models import BackendSelectionRecord
from app.exceptions import AccountNotFoundError, InvalidArgumentError, StorageError
from app.models.domain import BackendSelection
from app.services.ledger_store import LedgerStore, as_utc, utc_now
from app.services.query_validator import is_identifier

logger = get_logger(__name__)


def default_public_endpoint(project_ref: str, template: str | None = None) -> str:
    """REST base URL for a hosted project, e.g. https://<ref>.supabase.co/rest/v1."""
    # Project refs end up in a hostname; reuse the identifier whitelist.
    if not is_identifier(project_ref):
        raise InvalidArgumentError(f"Invalid provider project ref: {project_ref!r}")
    return (template or settings.provider_rest_url_template).format(project_ref=project_ref)


def _record_to_domain(record: BackendSelectionRecord) -> BackendSelection:
    return BackendSelection(
        account_id=record.account_id,
        provider_project_ref=record.provider_project_ref,
        project_name=record.project_name,
        public_endpoint=record.public_endpoint,
        public_key=record.public_key,
        privileged_key=record.privileged_key,
        selected_at=as_utc(record.selected_at),
    )


class BackendSelectionService:
    """Store and resolve the per-account external backend selection."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session
        self.store = LedgerStore(session)

    async def get_selection(self, account_id: str) -> BackendSelection | None:
        """Current selection, or None when nothing is selected."""
        stmt = (
            select(BackendSelectionRecord)
            .where(BackendSelectionRecord.account_id == account_id)
            .execution_options(populate_existing=True)
        )
        try:
            record = (await self.session.execute(stmt)).scalar_one_or_none()
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to read backend selection: {type(e).__name__}") from e
        return _record_to_domain(record) if record is not None else None

    async def select_backend(
        self,
        account_id: str,
        provider_project_ref: str,
        public_key: str,
        privileged_key: str,
        public_endpoint: str | None = None,
        project_name: str | None = None,
    ) -> BackendSelection:
        """
        Bind an external project to the account, replacing any previous one.

        Raises:
            AccountNotFoundError: Account doesn't exist
            InvalidArgumentError: Missing keys or bad project ref
        """
        if not provider_project_ref:
            raise InvalidArgumentError("provider_project_ref is required")
        if not public_key or not privileged_key:
            raise InvalidArgumentError("public_key and privileged_key are required")
        endpoint = (public_endpoint or default_public_endpoint(provider_project_ref)).rstrip("/")

        if await self.store.find_account(account_id) is None:
            raise AccountNotFoundError(account_id)

        stmt = select(BackendSelectionRecord).where(
            BackendSelectionRecord.account_id == account_id
        )
        try:
            record = (await self.session.execute(stmt)).scalar_one_or_none()
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to read backend selection: {type(e).__name__}") from e

        now = utc_now()
        if record is None:
            record = BackendSelectionRecord(account_id=account_id)
            self.session.add(record)
        record.provider_project_ref = provider_project_ref
        record.project_name = project_name
        record.public_endpoint = endpoint
        record.public_key = public_key
        record.privileged_key = privileged_key
        record.selected_at = now

        await self.store.commit("backend selection")

        logger.info(
            "backend_selected",
            account_id=account_id,
            provider_project_ref=provider_project_ref,
            endpoint=endpoint,
        )
        return _record_to_domain(record)

    async def deselect(self, account_id: str) -> bool:
        """Clear the selection. Returns True when one existed."""
        stmt = delete(BackendSelectionRecord).where(
            BackendSelectionRecord.account_id == account_id
        )
        try:
            result = await self.session.execute(stmt)
        except SQLAlchemyError as e:
            await self.store.rollback()
            raise StorageError(f"Failed to clear backend selection: {type(e).__name__}") from e
        await self.store.commit("backend deselection")

        removed = (result.rowcount or 0) > 0
        logger.info("backend_deselected", account_id=account_id, removed=removed)
        return removed
