"""POST /v1/jobs/offer-expiry - hourly trigger for the offer expiry sweep"""

from fastapi import APIRouter, BackgroundTasks, Depends

from peerloan_gateway.api.dependencies import get_dispatcher, get_offer_machine, require_service_secret
from peerloan_gateway.api.v1.schemas import SweepError, SweepResponse
from peerloan_gateway.infrastructure.clients.dispatcher import NotificationDispatcher
from peerloan_gateway.services.offers import OfferStateMachine

router = APIRouter()


@router.post("/jobs/offer-expiry", response_model=SweepResponse, dependencies=[Depends(require_service_secret)])
def run_offer_expiry(
    background_tasks: BackgroundTasks,
    machine: OfferStateMachine = Depends(get_offer_machine),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    """Expire overdue offers and cascade their loans; commits per loan"""
    background_tasks.add_task(dispatcher.flush)
    report = machine.cascade.sweep()
    return SweepResponse(
        offers_expired=report.offers_expired,
        cascaded=report.cascaded,
        auto_accepted=report.auto_accepted,
        no_match=report.no_match,
        errors=[SweepError(**e) for e in report.errors],
    )
