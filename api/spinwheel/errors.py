"""Redemption failures and how they are rendered to clients."""
from fastapi import Request
from fastapi.responses import JSONResponse


class RedemptionError(Exception):
    status_code = 400
    code = "REDEMPTION_ERROR"
    message = "Redemption failed"

    def __init__(self, message: str | None = None):
        if message:
            self.message = message
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"ok": False, "message": self.message, "code": self.code}


class InvalidRequest(RedemptionError):
    status_code = 400
    code = "INVALID_REQUEST"
    message = "Invalid request"


class UserNotFound(RedemptionError):
    status_code = 404
    code = "USER_NOT_FOUND"
    message = "User not found"


class UserBlocked(RedemptionError):
    status_code = 403
    code = "USER_BLOCKED"
    message = "User is blocked"


class CodeNotFound(RedemptionError):
    status_code = 404
    code = "CODE_NOT_FOUND"
    message = "Invalid Code"


class CodeNotRedeemable(RedemptionError):
    status_code = 400
    code = "CODE_NOT_REDEEMABLE"

    MESSAGES = {
        "used": "Code already used",
        "disabled": "Code is disabled",
        "expired": "Code has expired",
        "unavailable": "Code is not available right now",
    }

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(self.MESSAGES.get(reason, f"Code is {reason}"))

    def to_dict(self) -> dict:
        return {**super().to_dict(), "reason": self.reason}


class RedemptionSystemError(RedemptionError):
    status_code = 500
    code = "SYSTEM_ERROR"
    message = "System Error"


async def redemption_exc_handler(request: Request, exc: RedemptionError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())
