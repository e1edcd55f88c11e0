from __future__ import annotations

import logging
from dataclasses import dataclass

from .default_templates import default_template
from .models import RECIPIENT_TYPES, EventType, RecipientType
from .store import EngineStore
from .templating import TemplateContent, validate_template

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolvedRule:
    recipient_type: RecipientType
    template: TemplateContent
    template_id: str | None = None

    @property
    def uses_default_template(self) -> bool:
        return self.template_id is None


class NotificationRuleResolver:
    def __init__(self, store: EngineStore) -> None:
        self._store = store

    def resolve(self, agency_id: str, event_type: EventType) -> list[ResolvedRule]:
        """Enabled recipient types for an event, each with the template to render.

        An empty list means nobody is configured to hear about this event.
        """
        rules = [
            rule
            for rule in self._store.list_notification_rules(agency_id, event_type=event_type)
            if rule.is_enabled
        ]
        rules.sort(key=lambda rule: RECIPIENT_TYPES.index(rule.recipient_type))

        resolved: list[ResolvedRule] = []
        for rule in rules:
            custom = self._custom_template(agency_id, rule.template_id, rule.recipient_type, event_type)
            if custom is not None:
                resolved.append(custom)
                continue
            resolved.append(
                ResolvedRule(
                    recipient_type=rule.recipient_type,
                    template=default_template(rule.recipient_type, event_type),
                )
            )
        return resolved

    def _custom_template(
        self,
        agency_id: str,
        template_id: str | None,
        recipient_type: RecipientType,
        event_type: EventType,
    ) -> ResolvedRule | None:
        if not template_id:
            return None
        record = self._store.get_template(agency_id, template_id)
        if record is None:
            logger.warning(
                "template %s for agency %s is missing, using default for %s/%s",
                template_id,
                agency_id,
                recipient_type,
                event_type,
            )
            return None
        problems = validate_template(record.subject, record.body_html, event_type)
        if problems:
            logger.warning(
                "template %s for agency %s failed validation (%s), using default",
                template_id,
                agency_id,
                "; ".join(problems),
            )
            return None
        return ResolvedRule(
            recipient_type=recipient_type,
            template=TemplateContent(subject=record.subject, body_html=record.body_html),
            template_id=record.template_id,
        )
