"""Access link policy enforcement.

An access link is the only way a customer reaches the agent. This service
validates a presented token against the link's status, expiry and usage
limits, and counts the use atomically when a session starts: single-use
links are claimed and multi-use links reserve one use under their cap.
Minutes are accumulated when the conversation ends. It also carries the
small set of administrative operations (create, update, cancel, list) used
to manage links.

Policy checks run in a fixed order and the first failing check decides the
rejection reason. Lazy status transitions (expired, exhausted) are persisted
as a side effect of the check that detects them.
"""

import json
import logging
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import or_, update
from sqlalchemy.orm import Session

from agentdesk.db.models import (
    AgentLink,
    LinkStatus,
    LinkType,
    parse_iso,
    utc_now_iso,
)
from agentdesk.errors import LinkRejectedError, LinkRejection, NotFoundError

logger = logging.getLogger(__name__)

# Fields an administrator may change through update_link.
_UPDATABLE_FIELDS = frozenset(
    {"name", "type", "max_uses", "max_minutes", "expires_at", "settings"}
)
_LIMIT_FIELDS = frozenset({"type", "max_uses", "max_minutes"})


def link_settings(link: AgentLink) -> dict[str, Any]:
    """Decode a link's settings JSON, tolerating corrupt values."""
    if not link.settings_json:
        return {}
    try:
        settings = json.loads(link.settings_json)
    except (json.JSONDecodeError, TypeError):
        logger.warning("Corrupted settings_json for link %s", link.id)
        return {}
    return settings if isinstance(settings, dict) else {}


def _limit_reached(link: AgentLink) -> bool:
    """True when a configured use or minute limit is met."""
    if link.max_uses and link.current_uses >= link.max_uses:
        return True
    if link.max_minutes and link.minutes_used >= link.max_minutes:
        return True
    return False


def _below_use_cap():
    """SQL condition: the link has no use cap or is still under it."""
    return or_(
        AgentLink.max_uses.is_(None),
        AgentLink.max_uses <= 0,
        AgentLink.current_uses < AgentLink.max_uses,
    )


class AccessLinkService:
    """Validate, consume and administer agent access links.

    Args:
        db: SQLAlchemy session (sync).
    """

    def __init__(self, db: Session) -> None:
        self._db = db

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def create_link(
        self,
        business_id: str,
        name: str = "",
        type: LinkType | str = LinkType.multi_use,
        max_uses: int | None = None,
        max_minutes: int | None = None,
        expires_at: str | None = None,
        settings: dict[str, Any] | None = None,
    ) -> AgentLink:
        """Create a new active link with a fresh token.

        Args:
            business_id: Owning business.
            name: Display name.
            type: single_use or multi_use.
            max_uses: Session cap (None = unlimited).
            max_minutes: Minute cap (None = unlimited).
            expires_at: ISO8601 expiry instant (None = never).
            settings: Assistant settings (assistant_name, welcome_message, ...).

        Returns:
            The created AgentLink.
        """
        link = AgentLink(
            business_id=business_id,
            name=name,
            type=LinkType(type).value,
            status=LinkStatus.active.value,
            max_uses=max_uses,
            max_minutes=max_minutes,
            expires_at=expires_at,
            settings_json=json.dumps(settings) if settings else None,
        )
        self._db.add(link)
        self._db.commit()
        logger.info("Created %s link %s for business %s", link.type, link.id, business_id)
        return link

    def get_link(self, link_id: str) -> AgentLink | None:
        """Get a link by primary key."""
        return self._db.get(AgentLink, link_id)

    def get_by_token(self, token: str) -> AgentLink | None:
        """Get a link by its public token."""
        return self._db.query(AgentLink).filter_by(token=token).first()

    def list_links(self, business_id: str) -> list[AgentLink]:
        """List a business's links, newest first."""
        return (
            self._db.query(AgentLink)
            .filter_by(business_id=business_id)
            .order_by(AgentLink.created_at.desc())
            .all()
        )

    def update_link(self, link_id: str, **changes: Any) -> AgentLink:
        """Apply administrative changes to a link.

        When the type or either limit changes, status is recomputed from the
        current counters: exhausted if a limit is met, expired if the expiry
        has passed, otherwise active.

        Raises:
            NotFoundError: If the link does not exist.
            ValueError: If an unknown field is passed.
        """
        link = self.get_link(link_id)
        if link is None:
            raise NotFoundError("AgentLink", link_id)

        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update link fields: {sorted(unknown)}")

        for key, value in changes.items():
            if key == "settings":
                link.settings_json = json.dumps(value) if value else None
            elif key == "type":
                link.type = LinkType(value).value
            else:
                setattr(link, key, value)

        if _LIMIT_FIELDS & set(changes):
            link.status = self._recompute_status(link).value

        link.updated_at = utc_now_iso()
        self._db.commit()
        return link

    def cancel_link(self, link_id: str) -> AgentLink:
        """Cancel a link. Cancelled links are never revived.

        Raises:
            NotFoundError: If the link does not exist.
        """
        link = self.get_link(link_id)
        if link is None:
            raise NotFoundError("AgentLink", link_id)
        link.status = LinkStatus.cancelled.value
        link.updated_at = utc_now_iso()
        self._db.commit()
        logger.info("Cancelled link %s", link_id)
        return link

    # ------------------------------------------------------------------
    # Session-flow operations
    # ------------------------------------------------------------------

    def validate_and_consume(
        self, token: str, now: datetime | None = None
    ) -> AgentLink:
        """Validate a token and count the use it grants.

        Single-use links are claimed; multi-use links reserve one use with a
        compare-and-set that never lets ``current_uses`` pass ``max_uses``.

        Args:
            token: Public link token.
            now: Evaluation instant (defaults to current UTC time).

        Returns:
            The validated AgentLink.

        Raises:
            LinkRejectedError: With the reason of the first failing check.
        """
        now = now or datetime.now(UTC)
        link = self.get_by_token(token)
        if link is None:
            raise LinkRejectedError(LinkRejection.not_found)

        self._check_policy(link, now)

        if link.type == LinkType.single_use.value:
            self._claim_single_use(link)
        else:
            self._reserve_use(link)

        return link

    def increment_usage(
        self, link_id: str, minutes_used: int = 0, count_use: bool = True
    ) -> AgentLink | None:
        """Accumulate usage after a conversation ends.

        Minutes are always added. With ``count_use`` a multi-use link also
        gains one use, but never beyond ``max_uses``; single-use links were
        counted when claimed. Sessions opened through ``validate_and_consume``
        already reserved their use and pass ``count_use=False``. A link that
        meets a limit afterwards becomes exhausted. Non-active statuses are
        kept.

        Returns:
            The refreshed link, or None if it no longer exists.
        """
        link = self.get_link(link_id)
        if link is None:
            logger.warning("increment_usage: link %s not found", link_id)
            return None

        self._db.execute(
            update(AgentLink)
            .where(AgentLink.id == link_id)
            .values(
                minutes_used=AgentLink.minutes_used + max(0, minutes_used),
                updated_at=utc_now_iso(),
            )
            .execution_options(synchronize_session=False)
        )
        if count_use and link.type != LinkType.single_use.value:
            self._db.execute(
                update(AgentLink)
                .where(AgentLink.id == link_id, _below_use_cap())
                .values(current_uses=AgentLink.current_uses + 1)
                .execution_options(synchronize_session=False)
            )
        self._db.commit()
        self._db.refresh(link)

        if link.status == LinkStatus.active.value and _limit_reached(link):
            self._set_status(link, LinkStatus.exhausted)

        logger.info(
            "Link %s usage: uses=%d minutes=%d status=%s",
            link.id,
            link.current_uses,
            link.minutes_used,
            link.status,
        )
        return link

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _check_policy(self, link: AgentLink, now: datetime) -> None:
        if link.status != LinkStatus.active.value:
            raise LinkRejectedError(LinkRejection.invalid_status, status=link.status)

        if link.expires_at and parse_iso(link.expires_at) < now:
            self._set_status(link, LinkStatus.expired)
            raise LinkRejectedError(LinkRejection.expired)

        if link.type == LinkType.single_use.value and link.current_uses >= 1:
            self._set_status(link, LinkStatus.exhausted)
            raise LinkRejectedError(LinkRejection.single_use_exhausted)

        if link.max_uses and link.current_uses >= link.max_uses:
            self._set_status(link, LinkStatus.exhausted)
            raise LinkRejectedError(LinkRejection.usage_limit_reached)

        if link.max_minutes and link.minutes_used >= link.max_minutes:
            self._set_status(link, LinkStatus.exhausted)
            raise LinkRejectedError(LinkRejection.minutes_limit_reached)

    def _claim_single_use(self, link: AgentLink) -> None:
        """Consume a single-use link with a compare-and-set update.

        Only the caller whose UPDATE matches ``current_uses = 0`` wins; a
        concurrent loser sees zero affected rows.
        """
        result = self._db.execute(
            update(AgentLink)
            .where(
                AgentLink.id == link.id,
                AgentLink.current_uses == 0,
                AgentLink.status == LinkStatus.active.value,
            )
            .values(
                current_uses=1,
                status=LinkStatus.exhausted.value,
                updated_at=utc_now_iso(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            self._db.rollback()
            logger.info("Single-use link %s lost the claim race", link.id)
            raise LinkRejectedError(LinkRejection.single_use_exhausted)
        self._db.commit()
        self._db.refresh(link)

    def _reserve_use(self, link: AgentLink) -> None:
        """Count one use of a multi-use link, guarded by its cap.

        Concurrent starts race on the same UPDATE; once the cap is reached
        the losers match zero rows and are rejected.
        """
        result = self._db.execute(
            update(AgentLink)
            .where(
                AgentLink.id == link.id,
                AgentLink.status == LinkStatus.active.value,
                _below_use_cap(),
            )
            .values(current_uses=AgentLink.current_uses + 1, updated_at=utc_now_iso())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            self._db.rollback()
            self._db.refresh(link)
            logger.info("Link %s has no uses left", link.id)
            if link.status == LinkStatus.active.value:
                self._set_status(link, LinkStatus.exhausted)
            raise LinkRejectedError(LinkRejection.usage_limit_reached)
        self._db.commit()
        self._db.refresh(link)
        if _limit_reached(link):
            self._set_status(link, LinkStatus.exhausted)

    def _set_status(self, link: AgentLink, status: LinkStatus) -> None:
        """Persist a lazy status transition out of active."""
        self._db.execute(
            update(AgentLink)
            .where(
                AgentLink.id == link.id,
                AgentLink.status == LinkStatus.active.value,
            )
            .values(status=status.value, updated_at=utc_now_iso())
            .execution_options(synchronize_session=False)
        )
        self._db.commit()
        self._db.refresh(link)
        logger.info("Link %s -> %s", link.id, link.status)

    @staticmethod
    def _recompute_status(link: AgentLink) -> LinkStatus:
        if link.status == LinkStatus.cancelled.value:
            return LinkStatus.cancelled
        if link.type == LinkType.single_use.value and link.current_uses >= 1:
            return LinkStatus.exhausted
        if _limit_reached(link):
            return LinkStatus.exhausted
        if link.expires_at and parse_iso(link.expires_at) < datetime.now(UTC):
            return LinkStatus.expired
        return LinkStatus.active
