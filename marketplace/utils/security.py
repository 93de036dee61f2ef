import logging
import secrets
from fastapi import Request, HTTPException, Depends
from typing import Optional, Dict, Any

from marketplace.config import INTERNAL_SERVICE_SECRET, INTERNAL_ALLOWED_SERVICES

logger = logging.getLogger(__name__)

INTERNAL_SERVICE_HEADER = "X-Internal-Service"
INTERNAL_SECRET_HEADER = "X-Internal-Secret"

def determine_role(metadata: Dict[str, Any] | None) -> str:
    role = str((metadata or {}).get("role", "")).lower()
    if role in ("admin", "vendor"):
        return role
    return "buyer"

def _bearer_token(request: Request) -> Optional[str]:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None

def get_user_from_token(token: str) -> Dict[str, Any]:
    """Résout un JWT Supabase en dict utilisateur normalisé {id, email, role, vendor_id}."""
    from marketplace.infra.supabase_client import get_supabase
    res = get_supabase().auth.get_user(token)
    user = getattr(res, "user", None)
    if user is None:
        return {}
    metadata = dict(getattr(user, "app_metadata", None) or {})
    metadata.update(getattr(user, "user_metadata", None) or {})
    return {
        "id": getattr(user, "id", None),
        "email": getattr(user, "email", None),
        "role": determine_role(metadata),
        "vendor_id": metadata.get("vendor_id"),
    }

def get_current_user(request: Request) -> Dict[str, Any]:
    token = _bearer_token(request)
    if not token:
        raise HTTPException(status_code=401, detail="Non authentifié")
    try:
        user = get_user_from_token(token)
        if not user.get("id"):
            raise HTTPException(status_code=401, detail="Session expirée, veuillez vous connecter")
        return user
    except HTTPException:
        raise
    except Exception:
        logger.exception("security.get_current_user failed")
        raise HTTPException(status_code=401, detail="Session expirée, veuillez vous connecter")

def require_user(user: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
    return user

def require_admin(user: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
    if user.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Accès interdit")
    return user

def ensure_vendor_access(user: Dict[str, Any], vendor_id: str) -> None:
    """Un vendeur n'accède qu'à ses propres payouts et à son onboarding; l'admin accède à tout."""
    if user.get("role") == "admin":
        return
    if user.get("role") == "vendor" and str(user.get("vendor_id") or "") == str(vendor_id):
        return
    raise HTTPException(status_code=403, detail="Accès interdit")

def internal_headers(service_name: str, secret: str) -> Dict[str, str]:
    return {INTERNAL_SERVICE_HEADER: service_name, INTERNAL_SECRET_HEADER: secret}

def require_internal_service(request: Request) -> str:
    """
    Garde des endpoints inter-services (verify / confirm-payment / create-intent / transfers).
    - Credential distinct des sessions utilisateur: X-Internal-Service + X-Internal-Secret.
    - Comparaison à temps constant; secret non configuré => tout est refusé.
    """
    service = request.headers.get(INTERNAL_SERVICE_HEADER, "")
    secret = request.headers.get(INTERNAL_SECRET_HEADER, "")
    client_ip = request.client.host if request.client else None

    if not service or not secret:
        logger.warning("security.internal_auth_missing ip=%s path=%s", client_ip, request.url.path)
        raise HTTPException(status_code=401, detail="Missing internal service credentials")

    if not INTERNAL_SERVICE_SECRET or not secrets.compare_digest(secret, INTERNAL_SERVICE_SECRET):
        logger.critical(
            "security.invalid_internal_secret service=%s ip=%s path=%s",
            service, client_ip, request.url.path,
        )
        raise HTTPException(status_code=401, detail="Invalid internal service credentials")

    if service not in INTERNAL_ALLOWED_SERVICES:
        logger.warning("security.internal_service_not_allowed service=%s ip=%s", service, client_ip)
        raise HTTPException(status_code=403, detail="Service not authorized")
    return service
