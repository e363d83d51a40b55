"""Rendering of Redmine journals into local comments"""

from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from app.models import Credential, LabelType
from app.services.labels import LabelTranslator

FIELD_NAMES = {
    "subject": "Subject",
    "description": "Description",
    "tracker_id": "Tracker",
    "status_id": "Status",
    "priority_id": "Priority",
    "assigned_to_id": "Assignee",
    "fixed_version_id": "Target version",
    "category_id": "Category",
    "parent_id": "Parent task",
    "start_date": "Start date",
    "due_date": "Due date",
    "done_ratio": "% Done",
    "estimated_hours": "Estimated time",
    "is_private": "Private",
}

LABEL_FIELDS = {
    "tracker_id": LabelType.TRACKER,
    "status_id": LabelType.STATUS,
    "priority_id": LabelType.PRIORITY,
}


class JournalNarrator:
    """Turns structured journal details into human readable lines.

    Output is deterministic for a given journal and database state: one line
    per detail, in journal order, each terminated by a newline.
    """

    def __init__(self, db: Session):
        self.db = db
        self.labels = LabelTranslator(db)

    def _value(self, name: str, value: Optional[str], server_id: int) -> Optional[str]:
        if value in (None, ""):
            return None
        if name in LABEL_FIELDS:
            label = self.labels.by_ext_id(value, server_id, LABEL_FIELDS[name])
            return label.name if label else f"#{value}"
        if name == "assigned_to_id":
            credential = (
                self.db.query(Credential)
                .filter(Credential.server_id == server_id, Credential.ext_id == int(value))
                .first()
            )
            return credential.user.name if credential else f"#{value}"
        return str(value)

    def _line(self, detail: Dict[str, Any], server_id: int) -> Optional[str]:
        prop = detail.get("property")
        name = str(detail.get("name") or "")
        old = detail.get("old_value")
        new = detail.get("new_value")

        if prop == "attachment":
            if new:
                return f"File {new} added"
            return f"File {old} deleted"
        if prop == "relation":
            return f"Relation {name} {'added' if new else 'removed'}: #{new or old}"
        if prop == "cf":
            field = f"Custom field {name}"
        elif prop == "attr":
            if name == "description":
                return "Description updated"
            field = FIELD_NAMES.get(name, name)
        else:
            return None

        old_text = self._value(name, old, server_id)
        new_text = self._value(name, new, server_id)
        if old_text and new_text:
            return f"{field} changed from {old_text} to {new_text}"
        if new_text:
            return f"{field} set to {new_text}"
        if old_text:
            return f"{field} deleted ({old_text})"
        return None

    def narrate(self, details: List[Dict[str, Any]], server_id: int) -> str:
        lines = [self._line(d, server_id) for d in details or []]
        return "".join(f"{line}\n" for line in lines if line)

    def comments(self, journals: List[Dict[str, Any]], server_id: int) -> List[Dict[str, Any]]:
        """Journal entries that become comments, with narration merged into notes.

        Entries with notes keep their notes (narration prepended); entries with
        only field changes become standalone comments holding the narration.
        """
        entries = []
        for journal in journals or []:
            notes = journal.get("notes") or ""
            narration = self.narrate(journal.get("details") or [], server_id)
            body = narration + notes
            if not body:
                continue
            entries.append(
                {
                    "id": journal["id"],
                    "notes": body,
                    "user_id": (journal.get("user") or {}).get("id"),
                    "created_on": journal.get("created_on"),
                }
            )
        return entries
