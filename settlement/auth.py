from dataclasses import dataclass

from fastapi import Header, HTTPException
from jose import JWTError, jwt

from settlement.config import JWT_ALGORITHM, JWT_SECRET


@dataclass(frozen=True)
class TenantContext:
    business_id: int
    employee_id: int
    role: str

    @property
    def is_owner_or_manager(self) -> bool:
        return self.role.lower() in ("owner", "manager")


def verify_token(authorization: str | None = Header(None)) -> TenantContext:
    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise ValueError("Unsupported auth scheme")
        claims = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
        return TenantContext(
            business_id=int(claims["businessId"]),
            employee_id=int(claims["employeeId"]),
            role=str(claims.get("role", "staff")),
        )
    except (AttributeError, ValueError, KeyError, TypeError, JWTError):
        raise HTTPException(status_code=401, detail="Invalid or missing token")
