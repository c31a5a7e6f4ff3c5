"""Security response headers (CSP, framing, sniffing, transport and isolation policies)."""
from __future__ import annotations

from fastapi import Request
from fastapi.responses import Response

from .config import Settings

CSP_DIRECTIVES: dict[str, list[str]] = {
    "script-src": [
        "'self'",
        "'unsafe-inline'",
        "'unsafe-eval'",
        "https://www.googletagmanager.com",
        "https://www.google-analytics.com",
        "https://js.stripe.com",
        "https://checkout.stripe.com",
        "https://maps.googleapis.com",
    ],
    "style-src": ["'self'", "'unsafe-inline'", "https://fonts.googleapis.com", "https://cdn.jsdelivr.net"],
    "img-src": ["'self'", "data:", "blob:", "https:"],
    "font-src": ["'self'", "https://fonts.gstatic.com", "https://cdn.jsdelivr.net"],
    "connect-src": [
        "'self'",
        "https://api.stripe.com",
        "https://firestore.googleapis.com",
        "https://firebase.googleapis.com",
        "https://identitytoolkit.googleapis.com",
        "https://securetoken.googleapis.com",
        "https://www.googleapis.com",
    ],
    "frame-src": ["'self'", "https://js.stripe.com", "https://checkout.stripe.com", "https://www.google.com"],
    "object-src": ["'none'"],
    "media-src": ["'self'", "https://firebasestorage.googleapis.com"],
    "worker-src": ["'self'", "blob:"],
    "manifest-src": ["'self'"],
    "base-uri": ["'self'"],
    "form-action": ["'self'"],
    "frame-ancestors": ["'none'"],
}

DEV_CSP_ADDITIONS: dict[str, list[str]] = {
    "script-src": ["http://localhost:3000", "http://localhost:3001", "ws://localhost:3000", "ws://localhost:3001"],
    "connect-src": ["http://localhost:3000", "http://localhost:3001", "ws://localhost:3000", "ws://localhost:3001"],
}

PERMISSIONS_POLICY = ", ".join(
    [
        "camera=()",
        "microphone=()",
        "geolocation=(self)",
        "payment=(self)",
        "usb=()",
        "magnetometer=()",
        "accelerometer=()",
        "gyroscope=()",
    ]
)

HSTS_VALUE = "max-age=31536000; includeSubDomains; preload"


def build_csp(production: bool) -> str:
    directives = {name: list(sources) for name, sources in CSP_DIRECTIVES.items()}
    if not production:
        for name, extra in DEV_CSP_ADDITIONS.items():
            directives[name].extend(extra)

    parts = [f"{name} {' '.join(sources)}" for name, sources in directives.items()]
    if production:
        parts.append("upgrade-insecure-requests")
    return "; ".join(parts)


def security_headers(request: Request, settings: Settings) -> dict[str, str]:
    headers = {
        "Content-Security-Policy": build_csp(settings.is_production),
        "X-Frame-Options": "DENY",
        "X-Content-Type-Options": "nosniff",
        "Referrer-Policy": "strict-origin-when-cross-origin",
        "X-XSS-Protection": "1; mode=block",
        "Permissions-Policy": PERMISSIONS_POLICY,
        "Cross-Origin-Embedder-Policy": "credentialless",
        "Cross-Origin-Opener-Policy": "same-origin",
        "Cross-Origin-Resource-Policy": "same-origin",
    }
    if request.url.scheme == "https" or settings.is_production:
        headers["Strict-Transport-Security"] = HSTS_VALUE
    return headers


def apply_security_headers(request: Request, response: Response, settings: Settings) -> Response:
    response.headers.update(security_headers(request, settings))
    return response
