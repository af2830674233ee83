from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.sessions import SessionMiddleware
from dotenv import load_dotenv
import logging
import os

# ---- route modules ----
from routes import order_routes, review_routes

# ---- db ----
from database import ensure_indexes, get_database

from errors import OrderAppError

load_dotenv()

# ---- logging ----
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("app")

app = FastAPI(title="Pharmacy Orders & Reviews", version="1.0.0")

# ---- session middleware ----
app.add_middleware(SessionMiddleware, secret_key=os.getenv("SECRET_KEY", "supersecretkey"))

# ---- startup ----
@app.on_event("startup")
def startup_event():
    # indexes back the uniqueness rules, so a failure here is fatal
    ensure_indexes(get_database())
    logger.info("Indexes ensured")

# ---- include routers ----
app.include_router(order_routes.router)
app.include_router(review_routes.router)

# ---- error handling ----
@app.exception_handler(OrderAppError)
async def order_app_error_handler(request: Request, exc: OrderAppError):
    return JSONResponse(content=exc.to_dict(), status_code=exc.http_status)

# auth gates and unknown routes raise plain HTTPExceptions
_HTTP_CODES = {401: "NOT_AUTHENTICATED", 403: "NOT_PERMITTED", 404: "NOT_FOUND", 405: "METHOD_NOT_ALLOWED"}

@app.exception_handler(StarletteHTTPException)
async def custom_http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        content={
            "success": False,
            "type": "error",
            "code": _HTTP_CODES.get(exc.status_code, "HTTP_ERROR"),
            "message": str(exc.detail),
            "detail": [],
        },
        status_code=exc.status_code,
        headers=getattr(exc, "headers", None),
    )

@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    detail = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
        detail.append(f"{loc}: {err.get('msg')}" if loc else err.get("msg"))
    return JSONResponse(
        content={
            "success": False,
            "type": "error",
            "code": "VALIDATION_ERROR",
            "message": "Input validation failed",
            "detail": detail,
        },
        status_code=400,
    )

# ---- dev run ----
if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=True)
