from fastapi import FastAPI, Request
from starlette.responses import Response


API_HEADERS = {
    "X-Robots-Tag": "noindex, nofollow, noarchive",
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "no-referrer",
}


def install_security_headers(app: FastAPI) -> None:
    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response: Response = await call_next(request)
        for name, value in API_HEADERS.items():
            response.headers.setdefault(name, value)
        # Wallet, invoice and order payloads must never sit in shared caches.
        if request.url.path.startswith("/api/"):
            response.headers["Cache-Control"] = "no-store"
        return response
