import secrets

from flask import Flask, Request, jsonify, request, session

# Paths served without a session (container probes).
SESSIONLESS_PREFIXES = ("/health", "/healthz")
UNSAFE_METHODS = ("POST", "PUT", "PATCH", "DELETE")


def ensure_csrf_token() -> str:
    """Ensure a CSRF token exists in the session and return it."""
    token = session.get("csrf_token")
    if not token:
        token = secrets.token_urlsafe(32)
        session["csrf_token"] = token
    return token


def _submitted_token(req: Request) -> str | None:
    token = req.headers.get("X-CSRF-Token")
    if token:
        return token
    if req.is_json:
        body = req.get_json(silent=True)
        return body.get("csrf_token") if isinstance(body, dict) else None
    return req.form.get("csrf_token")


def validate_csrf(req: Request) -> bool:
    token = _submitted_token(req)
    expected = session.get("csrf_token") or ""
    return bool(token) and secrets.compare_digest(str(token), str(expected))


def install_csrf_guard(app: Flask) -> None:
    """
    Every state-changing request must echo the session's token in the
    X-CSRF-Token header (or a csrf_token field). Login is exempt: it is
    where clients obtain the token.
    """

    @app.before_request
    def _csrf_guard():
        if request.path.startswith(SESSIONLESS_PREFIXES):
            return None
        ensure_csrf_token()
        session.permanent = True
        if request.method not in UNSAFE_METHODS:
            return None
        if (request.endpoint or "").startswith("auth."):
            return None
        if not validate_csrf(request):
            return jsonify({"error": "CSRF token missing or invalid.", "type": "CSRFError"}), 400
        return None
