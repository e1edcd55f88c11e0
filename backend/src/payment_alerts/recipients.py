from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from .ledger import normalize_address
from .models import RecipientType
from .notifier import mask_contact_target
from .store import EngineStore, InstallmentContext

logger = logging.getLogger(__name__)

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


@dataclass(frozen=True)
class Recipient:
    address: str
    display_name: str
    recipient_type: RecipientType
    user_id: str | None = None


def usable_address(value: str | None) -> str | None:
    if value is None:
        return None
    candidate = value.strip()
    if not candidate or not _EMAIL_RE.match(candidate):
        return None
    return candidate


class RecipientResolver:
    def __init__(self, store: EngineStore) -> None:
        self._store = store

    def expand(self, context: InstallmentContext, recipient_type: RecipientType) -> list[Recipient]:
        candidates = self._candidates(context, recipient_type)
        seen: set[str] = set()
        recipients: list[Recipient] = []
        for candidate in candidates:
            key = normalize_address(candidate.address)
            if key in seen:
                continue
            seen.add(key)
            recipients.append(candidate)
        return recipients

    def _candidates(self, context: InstallmentContext, recipient_type: RecipientType) -> list[Recipient]:
        installment_id = context.installment.installment_id
        if recipient_type == "student":
            student = context.student
            address = usable_address(student.email if student else None)
            if student is None or address is None:
                logger.info("skipping student recipient for installment %s: no usable email", installment_id)
                return []
            return [Recipient(address=address, display_name=student.full_name, recipient_type="student")]

        if recipient_type == "agency_user":
            recipients: list[Recipient] = []
            for user in self._store.list_notifiable_staff(context.agency.agency_id):
                address = usable_address(user.email)
                if address is None:
                    logger.info("skipping agency user %s: no usable email", user.user_id)
                    continue
                recipients.append(
                    Recipient(
                        address=address,
                        display_name=user.full_name,
                        recipient_type="agency_user",
                        user_id=user.user_id,
                    )
                )
            return recipients

        if recipient_type == "partner_institution":
            branch = context.branch
            college = context.college
            address = usable_address(branch.contact_email if branch else None) or usable_address(
                college.contact_email if college else None
            )
            if address is None:
                logger.info(
                    "skipping partner institution recipient for installment %s: no contact on file",
                    installment_id,
                )
                return []
            display_name = branch.name if branch is not None else college.name if college is not None else address
            return [Recipient(address=address, display_name=display_name, recipient_type="partner_institution")]

        if recipient_type == "sales_agent":
            agent = context.sales_agent
            if agent is None:
                return []
            address = usable_address(agent.email)
            if address is None or not agent.is_active:
                logger.info(
                    "skipping sales agent %s for installment %s: inactive or no usable email (%s)",
                    agent.user_id,
                    installment_id,
                    mask_contact_target(agent.email or ""),
                )
                return []
            return [
                Recipient(
                    address=address,
                    display_name=agent.full_name,
                    recipient_type="sales_agent",
                    user_id=agent.user_id,
                )
            ]

        logger.warning("unknown recipient type %r", recipient_type)
        return []
