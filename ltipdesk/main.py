from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ltipdesk.api.routes.auth import router as auth_router
from ltipdesk.api.routes.calculators import router as calculators_router
from ltipdesk.api.routes.dashboard import router as dashboard_router
from ltipdesk.api.routes.employees import router as employees_router
from ltipdesk.api.routes.grants import router as grants_router
from ltipdesk.api.routes.plans import router as plans_router
from ltipdesk.api.routes.schedules import router as schedules_router
from ltipdesk.api.routes.vesting_events import router as vesting_events_router
from ltipdesk.core.config import get_settings
from ltipdesk.core.database import init_db
from ltipdesk.core.logging import configure_logging

settings = get_settings()
configure_logging(settings.debug)


@asynccontextmanager
async def lifespan(_: FastAPI):
    if settings.environment.lower() == "production" and not settings.auth_enabled:
        raise RuntimeError("AUTH_ENABLED cannot be disabled in production")
    init_db()
    yield


app = FastAPI(title=settings.app_name, version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(auth_router)
app.include_router(employees_router)
app.include_router(schedules_router)
app.include_router(plans_router)
app.include_router(grants_router)
app.include_router(vesting_events_router)
app.include_router(calculators_router)
app.include_router(dashboard_router)


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}
