from dataclasses import dataclass
from uuid import UUID

from fastapi import Header, HTTPException, status

OPERATOR_ROLES = {"admin", "operator"}


@dataclass(frozen=True, slots=True)
class Operator:
    """Identity forwarded by the upstream gateway; the API never authenticates on its own."""

    id: UUID | None
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


async def get_operator(
    x_operator_role: str | None = Header(default=None),
    x_operator_id: str | None = Header(default=None),
) -> Operator:
    role = (x_operator_role or "").strip().lower()
    if role not in OPERATOR_ROLES:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Operator access required")
    operator_id: UUID | None = None
    if x_operator_id:
        try:
            operator_id = UUID(x_operator_id.strip())
        except ValueError:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid operator id")
    return Operator(id=operator_id, role=role)
