"""
AgencyDesk CRM - Quote recipient (client OR lead)

A quote keeps a denormalized snapshot of its recipient so that the issued
document stays stable if the client/lead record changes later.
"""

import re
from typing import List, Optional

from pydantic import BaseModel

from .quote import RecipientKind

# Domains that never receive a quote email
DEFAULT_EMAIL_DENYLIST = [
    "example.com",
    "test.com",
    "localhost",
    "invalid",
]

RECIPIENT_COLLECTIONS = {
    RecipientKind.CLIENT.value: "clients",
    RecipientKind.LEAD.value: "leads",
}


def is_valid_email_format(email: str) -> bool:
    """Basic email format check"""
    if not email:
        return False
    pattern = r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$'
    return bool(re.match(pattern, email))


def is_email_in_denylist(email: str, denylist: List[str] = None) -> bool:
    if not email:
        return False
    if denylist is None:
        denylist = DEFAULT_EMAIL_DENYLIST
    domain = email.split('@')[-1].lower()
    return domain in [d.lower() for d in denylist]


class RecipientSnapshot(BaseModel):
    name: str = ""
    email: str = ""
    phone: str = ""
    company: str = ""

    @classmethod
    def from_document(cls, doc: dict, kind: str) -> "RecipientSnapshot":
        if kind == RecipientKind.CLIENT.value:
            # clients.name is the company, contact_name the person
            contact = doc.get("contact_name") or ""
            return cls(
                name=contact or doc.get("name", ""),
                company=doc.get("name", "") if contact else "",
                email=doc.get("email") or "",
                phone=doc.get("phone") or "",
            )
        return cls(
            name=doc.get("name", ""),
            email=doc.get("email") or "",
            phone=doc.get("phone") or "",
            company=doc.get("company") or "",
        )

    def deliverable_email(self) -> Optional[str]:
        if is_valid_email_format(self.email) and not is_email_in_denylist(self.email):
            return self.email
        return None
