from fastapi import APIRouter, Depends

from ltipdesk.api.deps import get_current_user
from ltipdesk.core.config import get_settings
from ltipdesk.models import User
from ltipdesk.schemas import TaxEstimate, TaxEstimateRequest, ZakatEstimate, ZakatEstimateRequest
from ltipdesk.services.calculators import estimate_tax, estimate_zakat

router = APIRouter(prefix="/api/calculators", tags=["calculators"])
settings = get_settings()


@router.post("/tax", response_model=TaxEstimate)
def tax_estimate(payload: TaxEstimateRequest, _: User = Depends(get_current_user)) -> TaxEstimate:
    return estimate_tax(payload)


@router.post("/zakat", response_model=ZakatEstimate)
def zakat_estimate(payload: ZakatEstimateRequest, _: User = Depends(get_current_user)) -> ZakatEstimate:
    return estimate_zakat(payload, settings.gold_price_per_gram)
