# followup_engine/repo/students.py
from __future__ import annotations
import asyncio
import logging
from typing import Dict, Iterable, Optional, Protocol

import phonenumbers
from supabase import Client, create_client

from followup_engine.domain.models import Student

log = logging.getLogger("followups.students")


# --------------------------------------------------------------------------
# 📞 Contact normalization
# --------------------------------------------------------------------------
def normalize_phone(num: str | None, region: str = "US") -> str | None:
    if not num:
        return None
    try:
        parsed = phonenumbers.parse(num, region)
    except phonenumbers.NumberParseException:
        return num.strip()
    return phonenumbers.format_number(parsed, phonenumbers.PhoneNumberFormat.E164)


def normalize_email(addr: str | None) -> str | None:
    if not addr:
        return None
    # "Jane Doe <jane@example.com>" → jane@example.com
    if "<" in addr and ">" in addr:
        addr = addr[addr.index("<") + 1:addr.index(">")]
    return addr.strip().casefold()


def normalize_contact(channel: str, contact_ref: str | None) -> str | None:
    if channel == "email":
        return normalize_email(contact_ref)
    return normalize_phone(contact_ref)


class StudentDirectory(Protocol):
    async def get(self, student_id: str) -> Optional[Student]: ...

    async def resolve_contact(self, channel: str, contact_ref: str) -> Optional[Student]: ...


class InMemoryStudentDirectory:
    """Directory backed by a dict; used by tests and the dev server."""

    def __init__(self, students: Iterable[Student] = ()):
        self._students: Dict[str, Student] = {}
        for s in students:
            self.add(s)

    def add(self, student: Student) -> Student:
        stored = student.model_copy(update={
            "phone": normalize_phone(student.phone),
            "email": normalize_email(student.email),
        })
        self._students[stored.id] = stored
        return stored

    async def get(self, student_id: str) -> Optional[Student]:
        return self._students.get(student_id)

    async def resolve_contact(self, channel: str, contact_ref: str) -> Optional[Student]:
        ref = normalize_contact(channel, contact_ref)
        if not ref:
            return None
        field = "email" if channel == "email" else "phone"
        for s in self._students.values():
            if getattr(s, field) == ref:
                return s
        return None


class SupabaseStudentDirectory:
    """
    Reads students + enrollments from the admin app's Supabase project.
    The supabase client is synchronous; calls run in a worker thread.
    """

    STUDENT_COLUMNS = "id, full_name, email, mobile_phone_number"

    def __init__(self, client: Client):
        self.client = client

    @classmethod
    def from_settings(cls, url: str, service_role_key: str) -> "SupabaseStudentDirectory":
        if not url or not service_role_key:
            raise RuntimeError("Supabase not configured: set SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY")
        return cls(create_client(url, service_role_key))

    def _enrollment_statuses(self, student_id: str) -> list[str]:
        res = (
            self.client.table("enrollments")
            .select("id, status")
            .eq("student_id", student_id)
            .execute()
        )
        return [r["status"] for r in (res.data or []) if r.get("status")]

    def _to_student(self, row: dict) -> Student:
        return Student(
            id=str(row["id"]),
            full_name=row.get("full_name") or "",
            email=normalize_email(row.get("email")),
            phone=normalize_phone(row.get("mobile_phone_number")),
            enrollment_statuses=self._enrollment_statuses(str(row["id"])),
        )

    def _get_sync(self, student_id: str) -> Optional[Student]:
        res = (
            self.client.table("students")
            .select(self.STUDENT_COLUMNS)
            .eq("id", student_id)
            .limit(1)
            .execute()
        )
        return self._to_student(res.data[0]) if res.data else None

    def _resolve_sync(self, channel: str, contact_ref: str) -> Optional[Student]:
        ref = normalize_contact(channel, contact_ref)
        if not ref:
            return None
        column = "email" if channel == "email" else "mobile_phone_number"
        res = (
            self.client.table("students")
            .select(self.STUDENT_COLUMNS)
            .eq(column, ref)
            .order("created_at", desc=True)
            .limit(1)
            .execute()
        )
        if not res.data:
            log.info("No student found for %s contact %s", channel, ref)
            return None
        return self._to_student(res.data[0])

    async def get(self, student_id: str) -> Optional[Student]:
        return await asyncio.to_thread(self._get_sync, student_id)

    async def resolve_contact(self, channel: str, contact_ref: str) -> Optional[Student]:
        return await asyncio.to_thread(self._resolve_sync, channel, contact_ref)
