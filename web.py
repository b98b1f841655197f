from fastapi import FastAPI, Request, APIRouter
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from apis.chat import router as chat_router
from apis.image import router as image_router
from apis.tokens import router as tokens_router
from apis.stripe_webhook import router as stripe_router
from apis.base import error_response
from core.config import cfg, VERSION, API_BASE
from core.db import DB
from core.events import log_event, E
from core.log import get_logger, set_trace_id
from jobs.usage_cleanup import start_usage_cleanup_worker

logger = get_logger(__name__)


app = FastAPI(
    title="Token Quota API",
    description="对话 / 图片生成代理与按月 token 配额服务",
    version=VERSION,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def add_trace_id(request: Request, call_next):
    tid = set_trace_id(request.headers.get("X-Request-Id"))
    response = await call_next(request)
    response.headers["X-Request-Id"] = tid
    response.headers["X-Version"] = VERSION
    response.headers["Server"] = cfg.get("app_name", "token-quota")
    return response


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"detail": error_response(code=40001, message="Invalid request body", data=[{"loc": list(e.get("loc", ())), "msg": e.get("msg", "")} for e in exc.errors()])},
    )


api_router = APIRouter(prefix=f"{API_BASE}")
api_router.include_router(chat_router)
api_router.include_router(image_router)
api_router.include_router(tokens_router)
api_router.include_router(stripe_router)
app.include_router(api_router)


@app.on_event("startup")
async def on_startup():
    DB.create_tables()
    start_usage_cleanup_worker()
    log_event(logger, E.SYSTEM_STARTUP, version=VERSION)
