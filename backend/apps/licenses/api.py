from typing import Any

from fastapi import APIRouter, Body, Depends, Query, status
from fastapi.responses import JSONResponse

from agents.dunning.dispatcher import ChatRequest, DunningDispatcher
from agents.dunning.errors import ValidationError
from agents.dunning.ledger import LicenseLedger, check_validity
from agents.dunning.scanner import OverdueScanner
from backend.core.security import require_api_key
from backend.core.services import get_dispatcher, get_ledger, get_scanner

router = APIRouter(prefix="/licenses", dependencies=[Depends(require_api_key)])


def _require_object(body: Any) -> dict[str, Any]:
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


# Static paths are declared before /{license_id} so they are not captured by it.


@router.get("")
def list_licenses(
    status_filter: str | None = Query(None, alias="status"),
    ruc_or_dni: str | None = Query(None, alias="rucOrDni"),
    domain: str | None = Query(None),
    auto_renew: bool | None = Query(None, alias="autoRenew"),
    ledger: LicenseLedger = Depends(get_ledger),
):
    licenses = ledger.find(
        status=status_filter, ruc_or_dni=ruc_or_dni, domain=domain, auto_renew=auto_renew
    )
    return [license.to_dict() for license in licenses]


@router.post("", status_code=status.HTTP_201_CREATED)
def create_license(body: Any = Body(...), ledger: LicenseLedger = Depends(get_ledger)):
    return ledger.create(_require_object(body)).to_dict()


@router.get("/overdue")
def overdue_licenses(
    grace: bool = Query(False),
    limit: int | None = Query(None, ge=1),
    scanner: OverdueScanner = Depends(get_scanner),
):
    """Licenses past their end date or next payment, grace-filtered unless ``grace``."""
    return scanner.scan(include_grace=grace, limit=limit).to_dict()


@router.get("/verify")
def verify_license(
    domain: str | None = Query(None),
    license_key: str | None = Query(None, alias="licenseKey"),
    ledger: LicenseLedger = Depends(get_ledger),
):
    """Validity check by domain, falling back to license key."""
    domain = (domain or "").strip()
    license_key = (license_key or "").strip()
    if not domain and not license_key:
        raise ValidationError("domain or licenseKey required", fields=["domain", "licenseKey"])

    license = ledger.get_by_domain(domain) if domain else None
    if license is None and license_key:
        license = ledger.get_by_license_key(license_key)
    if license is None:
        return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"valid": False})
    return {"valid": check_validity(license, ledger.now()), "license": license.to_dict()}


@router.post("/renew")
def renew_licenses(ledger: LicenseLedger = Depends(get_ledger)):
    return ledger.renew_due()


@router.post("/send-whatsapp-group")
def send_whatsapp_group(
    body: Any = Body(None), dispatcher: DunningDispatcher = Depends(get_dispatcher)
):
    return dispatcher.send_chat_group(ChatRequest.from_dict(body)).to_dict()


@router.get("/{license_id}")
def get_license(license_id: str, ledger: LicenseLedger = Depends(get_ledger)):
    return ledger.get(license_id).to_dict()


@router.put("/{license_id}")
def replace_license(
    license_id: str, body: Any = Body(...), ledger: LicenseLedger = Depends(get_ledger)
):
    return ledger.update(license_id, _require_object(body)).to_dict()


@router.patch("/{license_id}")
def patch_license(
    license_id: str, body: Any = Body(...), ledger: LicenseLedger = Depends(get_ledger)
):
    return ledger.update(license_id, _require_object(body)).to_dict()


@router.post("/{license_id}/send-email")
def send_email(license_id: str, dispatcher: DunningDispatcher = Depends(get_dispatcher)):
    return dispatcher.send_email(license_id)


@router.post("/{license_id}/send-whatsapp")
def send_whatsapp(
    license_id: str,
    body: Any = Body(None),
    dispatcher: DunningDispatcher = Depends(get_dispatcher),
):
    return dispatcher.send_chat(license_id, ChatRequest.from_dict(body)).to_dict()


@router.post("/{license_id}/payment-intent")
def create_payment_intent(license_id: str, ledger: LicenseLedger = Depends(get_ledger)):
    """Issue a short-lived payment code for the client to quote when paying."""
    return ledger.create_payment_intent(license_id)
