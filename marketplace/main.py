import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from marketplace.config import settings
from marketplace.db import SessionLocal, engine
from marketplace.errors import ServiceError
from marketplace.models import Base
from marketplace.routers import (
    admin,
    auth,
    bookings,
    delivery_slots,
    invoices,
    notifications,
    orders,
    producer,
    products,
)
from marketplace.security.headers import install_security_headers
from marketplace.security.sessions import install_auth_session_middleware

logging.basicConfig(level=settings.log_level.upper(), format='%(asctime)s %(levelname)s %(name)s: %(message)s')
logger = logging.getLogger(__name__)

HTTP_ERROR_CODES = {
    400: 'VALIDATION_ERROR',
    401: 'UNAUTHORIZED',
    403: 'FORBIDDEN',
    404: 'NOT_FOUND',
    405: 'METHOD_NOT_ALLOWED',
    409: 'CONFLICT',
    429: 'RATE_LIMITED',
}

app = FastAPI(title='Producer Marketplace')
app.state.session_factory = SessionLocal

if settings.auto_create_tables:
    Base.metadata.create_all(engine)

install_security_headers(app)
install_auth_session_middleware(app)


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning('%s %s failed: %s (%s)', request.method, request.url.path, exc.message, exc.code)
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_payload()))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = [
        {'field': '.'.join(str(part) for part in error.get('loc', ())[1:]), 'message': error.get('msg')}
        for error in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content={'error': 'Données invalides', 'code': 'VALIDATION_ERROR', 'details': details},
    )


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code = HTTP_ERROR_CODES.get(exc.status_code, 'ERROR')
    return JSONResponse(
        status_code=exc.status_code,
        content={'error': str(exc.detail), 'code': code},
        headers=getattr(exc, 'headers', None),
    )


app.include_router(auth.router)
app.include_router(products.router)
app.include_router(delivery_slots.router)
app.include_router(bookings.router)
app.include_router(orders.router)
app.include_router(invoices.router)
app.include_router(producer.router)
app.include_router(notifications.router)
app.include_router(admin.router)


@app.get('/api/health')
def health() -> dict:
    return {'status': 'ok'}


@app.get('/robots.txt', response_class=PlainTextResponse)
def robots_txt() -> str:
    return 'User-agent: *\nDisallow: /\n'
