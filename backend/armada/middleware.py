import base64
import os

from django.contrib.auth import authenticate, get_user_model


class ApiTokenAuthMiddleware:
    """Authenticates API clients by bearer token or HTTP basic credentials."""

    def __init__(self, get_response):
        self.get_response = get_response

    def __call__(self, request):
        token = _extract_bearer_token(request)
        if token:
            expected = os.environ.get("ARMADA_API_TOKEN", "").strip()
            if expected and token == expected:
                _login(request, _get_service_user())
        else:
            credentials = _extract_basic_credentials(request)
            if credentials:
                user = authenticate(request, username=credentials[0], password=credentials[1])
                if user is not None and user.is_active:
                    _login(request, user)
        return self.get_response(request)


def _login(request, user) -> None:
    request.user = user
    request._cached_user = user
    request._dont_enforce_csrf_checks = True


def _extract_bearer_token(request) -> str:
    header = request.headers.get("Authorization", "")
    if not header:
        return ""
    parts = header.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return ""
    return parts[1].strip()


def _extract_basic_credentials(request):
    header = request.headers.get("Authorization", "")
    parts = header.split()
    if len(parts) != 2 or parts[0].lower() != "basic":
        return None
    try:
        decoded = base64.b64decode(parts[1]).decode("utf-8")
    except (ValueError, UnicodeDecodeError):
        return None
    if ":" not in decoded:
        return None
    username, password = decoded.split(":", 1)
    return username, password


def _get_service_user():
    User = get_user_model()
    username = os.environ.get("ARMADA_API_TOKEN_USER", "armada-api").strip() or "armada-api"
    user, created = User.objects.get_or_create(
        username=username,
        defaults={"is_staff": True, "is_active": True, "email": ""},
    )
    if created or not user.is_staff:
        user.is_staff = True
        user.is_active = True
        user.save(update_fields=["is_staff", "is_active"])
    return user
