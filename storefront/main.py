from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from storefront import order_routes, routes
from storefront.config import get_settings
from storefront.database import Base, engine
from storefront.errors import StorefrontError
from storefront.log import configure_logging

settings = get_settings()
configure_logging(settings.LOG_LEVEL, settings.LOG_JSON)

app = FastAPI(title="Storefront Orders & Payments")

app.include_router(order_routes.router)
app.include_router(routes.router)

Base.metadata.create_all(bind=engine)


@app.exception_handler(StorefrontError)
async def storefront_error_handler(request: Request, exc: StorefrontError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": str(exc), "error_type": type(exc).__name__},
    )


@app.get("/health")
def health():
    return {"status": "ok"}
