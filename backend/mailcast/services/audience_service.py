"""Audience resolution - turns an audience selector into deduplicated recipients"""
import logging
from dataclasses import dataclass, replace
from typing import Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from mailcast.core.errors import InvalidInput
from mailcast.models.campaign import Audience
from mailcast.models.campaign_recipient import RecipientType
from mailcast.models.member import Member, members_newsletters
from mailcast.models.user import User

logger = logging.getLogger(__name__)

NEWSLETTER_MEMBER_STATUSES = ("free", "paid", "comped")
PAID_MEMBER_STATUSES = ("paid", "comped")


@dataclass(frozen=True)
class AudienceRecipient:
    source_id: int
    email: str
    name: Optional[str]
    recipient_type: str

    @property
    def member_id(self) -> Optional[int]:
        return self.source_id if self.recipient_type == RecipientType.MEMBER.value else None

    @property
    def user_id(self) -> Optional[int]:
        return self.source_id if self.recipient_type == RecipientType.STAFF_MEMBER.value else None


def normalize_email(email: Optional[str]) -> str:
    return str(email or "").strip().lower()


def validate_audience(audience: str) -> str:
    if audience not in Audience.values():
        raise InvalidInput("Invalid audience value.")
    return audience


def dedupe_recipients(recipients: Iterable[AudienceRecipient]) -> List[AudienceRecipient]:
    """Normalize emails and keep the first occurrence of each; blank emails are dropped"""
    seen = set()
    result = []
    for recipient in recipients:
        email = normalize_email(recipient.email)
        if not email or email in seen:
            continue
        seen.add(email)
        result.append(replace(recipient, email=email))
    return result


class AudienceResolver:
    """Reads the staff and member stores for a given audience"""

    def resolve(self, audience: str, db: Session) -> List[AudienceRecipient]:
        validate_audience(audience)

        if audience == Audience.STAFF_MEMBERS.value:
            recipients = self._staff(db)
        elif audience == Audience.NEWSLETTER_MEMBERS.value:
            recipients = self._members(db, NEWSLETTER_MEMBER_STATUSES, subscribed_only=True)
        else:
            recipients = self._members(db, PAID_MEMBER_STATUSES, subscribed_only=False)

        resolved = dedupe_recipients(recipients)
        logger.debug(f"Resolved audience {audience}: {len(resolved)} recipient(s)")
        return resolved

    def count(self, audience: str, db: Session) -> int:
        return len(self.resolve(audience, db))

    def _staff(self, db: Session) -> List[AudienceRecipient]:
        rows = db.query(User.id, User.email, User.name).filter(
            User.email.isnot(None),
            User.status == "active"
        ).order_by(User.id).all()

        return [
            AudienceRecipient(
                source_id=row.id,
                email=row.email,
                name=row.name or None,
                recipient_type=RecipientType.STAFF_MEMBER.value
            )
            for row in rows
        ]

    def _members(self, db: Session, statuses, subscribed_only: bool) -> List[AudienceRecipient]:
        query = db.query(Member.id, Member.email, Member.name).filter(
            Member.email.isnot(None),
            Member.email_disabled == False,  # noqa: E712
            Member.status.in_(statuses)
        )
        if subscribed_only:
            query = query.filter(Member.id.in_(select(members_newsletters.c.member_id)))

        return [
            AudienceRecipient(
                source_id=row.id,
                email=row.email,
                name=row.name or None,
                recipient_type=RecipientType.MEMBER.value
            )
            for row in query.order_by(Member.id).all()
        ]
