import logging

from fastapi import Depends, HTTPException, Request

from models import UserRole

logger = logging.getLogger("auth")


# Identity is established elsewhere (login flow); here we only read the
# session it leaves behind: {"id": ..., "username": ..., "role": ...}
def get_current_user(request: Request) -> dict:
    user = request.session.get("user")
    if not user or not user.get("id"):
        logger.info("No active session found -> user not authenticated")
        raise HTTPException(status_code=401, detail="Not authenticated")

    try:
        role = UserRole(str(user.get("role", "")).upper())
    except ValueError:
        logger.info("Session for %s carries unknown role %r", user.get("username"), user.get("role"))
        raise HTTPException(status_code=403, detail="Not authorized")

    return {"id": str(user["id"]), "username": user.get("username"), "role": role}


def require_role(*roles: UserRole):
    def wrapper(current_user: dict = Depends(get_current_user)):
        if current_user["role"] not in roles:
            logger.info(
                "User %s has role %s but one of %s is required",
                current_user.get("username"), current_user["role"].value, [r.value for r in roles],
            )
            raise HTTPException(status_code=403, detail="Not authorized")
        return current_user
    return wrapper
