from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from docgate import __version__
from docgate.core.config import get_settings
from docgate.core.logger import configure_from_settings
from docgate.core.approval import ApprovalConflictError, ApprovalPlanError
from docgate.core.policy import ActionPolicyError, ActionPolicyDeniedError
from docgate.api.routers import health, approvals, action_policies

settings = get_settings()
configure_from_settings(settings)

app = FastAPI(
    title=settings.app_name,
    description="Action policies and approval workflows for business documents",
    version=__version__,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.debug else [],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ActionPolicyError)
async def action_policy_error_handler(request: Request, exc: ActionPolicyError):
    content = {"code": exc.code, "detail": str(exc)}
    if isinstance(exc, ActionPolicyDeniedError):
        content["details"] = exc.details
    return JSONResponse(status_code=status.HTTP_403_FORBIDDEN, content=content)


@app.exception_handler(ApprovalConflictError)
async def approval_conflict_handler(request: Request, exc: ApprovalConflictError):
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content={"code": "APPROVAL_IN_PROGRESS", "detail": str(exc)},
    )


@app.exception_handler(ApprovalPlanError)
async def approval_plan_handler(request: Request, exc: ApprovalPlanError):
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"code": "APPROVAL_PLAN_EMPTY", "detail": str(exc)},
    )


# Include routers
app.include_router(health.router)
app.include_router(approvals.router, prefix="/api")
app.include_router(action_policies.router, prefix="/api")


@app.get("/")
async def root():
    return {
        "name": settings.app_name,
        "version": __version__,
        "docs": "/docs" if settings.debug else None,
    }
