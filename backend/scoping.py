"""Resolve which patient a request may touch.

A patient only ever acts on itself. A caretaker must name a patient explicitly,
and that patient's ``caretaker_id`` must be the caretaker's own id.
"""
import enum
from typing import List, Optional

from errors import Forbidden
from storage import AccountStore


class Role(str, enum.Enum):
    CARETAKER = "caretaker"
    PATIENT = "patient"


def unhandled_role(role) -> Exception:
    return ValueError(f"Unhandled role: {role!r}")


class AccessScope:
    def __init__(self, accounts: AccountStore):
        self.accounts = accounts

    async def _is_linked(self, caretaker_id: int, patient_id: Optional[int]) -> bool:
        if patient_id is None:
            return False
        return await self.accounts.linked_patient(caretaker_id, patient_id) is not None

    async def patient_ids_for_read(self, account: dict, requested_patient_id: Optional[int]) -> List[int]:
        """Patient ids a list endpoint may return; empty means no access."""
        role = Role(account["role"])
        if role is Role.PATIENT:
            return [account["id"]]
        elif role is Role.CARETAKER:
            if await self._is_linked(account["id"], requested_patient_id):
                return [requested_patient_id]
            return []
        raise unhandled_role(role)

    async def patient_id_for_write(self, account: dict, requested_patient_id: Optional[int]) -> int:
        role = Role(account["role"])
        if role is Role.PATIENT:
            return account["id"]
        elif role is Role.CARETAKER:
            if await self._is_linked(account["id"], requested_patient_id):
                return requested_patient_id
            raise Forbidden()
        raise unhandled_role(role)

    async def authorize_record(self, account: dict, record: dict) -> dict:
        """Re-check ownership for mutations addressed by record id."""
        allowed = await self.patient_ids_for_read(account, record.get("patient_id"))
        if record.get("patient_id") not in allowed:
            raise Forbidden()
        return record


def require_role(account: dict, role: Role, detail: str):
    if Role(account["role"]) is not role:
        raise Forbidden(detail)
