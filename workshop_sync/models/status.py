"""Request status state machine.

Computes the field changes a status transition implies without touching
the cached request. The Mutation Coordinator writes those changes to the
backing store and merges them only after confirmation.
"""

from decimal import Decimal
from typing import Any

import structlog
from statemachine import State, StateMachine
from statemachine.exceptions import TransitionNotAllowed

from workshop_sync.errors import InvalidTransition
from workshop_sync.models.entities import (
    InspectionRequest,
    PaymentType,
    RequestStatus,
    SplitPaymentDetails,
)

logger = structlog.get_logger()

# (current status, target status) -> event name
_TRANSITION_EVENTS: dict[tuple[RequestStatus, RequestStatus], str] = {
    (RequestStatus.WAITING_PAYMENT, RequestStatus.NEW): "activate",
    (RequestStatus.NEW, RequestStatus.IN_PROGRESS): "start",
    (RequestStatus.IN_PROGRESS, RequestStatus.COMPLETE): "finish",
    (RequestStatus.COMPLETE, RequestStatus.IN_PROGRESS): "reopen",
}


class RequestStatusMachine(StateMachine):
    """State machine for the inspection request lifecycle.

    States:
    - waiting_payment: created by reception, awaiting the cashier
    - new: paid (or billed later) and waiting for a technician
    - in_progress: inspection being filled in
    - complete: report finished

    Transitions:
    - activate: waiting_payment -> new (assigns the payment type)
    - start: new -> in_progress
    - finish: in_progress -> complete
    - reopen: complete -> in_progress
    """

    # Reception creates requests unpaid; start_value selects the real status
    waiting_payment = State(initial=True, value=RequestStatus.WAITING_PAYMENT)
    new = State(value=RequestStatus.NEW)
    in_progress = State(value=RequestStatus.IN_PROGRESS)
    complete = State(value=RequestStatus.COMPLETE)

    activate = waiting_payment.to(new)
    start = new.to(in_progress)
    finish = in_progress.to(complete)
    reopen = complete.to(in_progress)

    def __init__(self, request: InspectionRequest) -> None:
        """Initialize from the request's current status.

        Args:
            request: Request whose status drives the machine
        """
        self.request = request
        self.changes: dict[str, Any] = {}
        super().__init__(start_value=request.status)
        self.changes = {}

    @property
    def current_status(self) -> RequestStatus:
        """Get current state as RequestStatus enum."""
        return self.current_state.value

    def transition_to(self, target: RequestStatus, **kwargs: Any) -> dict[str, Any]:
        """Run the transition leading to ``target`` and return the field changes.

        Raises:
            InvalidTransition: If no transition leads from the current status
                to ``target``, or the transition's preconditions fail.
        """
        event = _TRANSITION_EVENTS.get((self.current_status, target))
        if event is None:
            raise InvalidTransition(
                f"Request {self.request.id} cannot move from "
                f"{self.current_status.value} to {target.value}"
            )
        try:
            self.send(event, **kwargs)
        except TransitionNotAllowed as exc:
            raise InvalidTransition(str(exc)) from exc
        return self.changes

    def before_activate(
        self,
        payment_type: PaymentType,
        split: SplitPaymentDetails | None = None,
    ) -> None:
        """Reject payments that do not settle the request."""
        if payment_type == PaymentType.UNPAID:
            raise InvalidTransition("activation requires a payment type")
        if payment_type == PaymentType.SPLIT:
            if split is None:
                raise InvalidTransition("split payment requires cash/card amounts")
            if split.total != Decimal(self.request.price):
                raise InvalidTransition(
                    f"split amounts {split.total} do not equal price {self.request.price}"
                )

    def on_activate(
        self,
        payment_type: PaymentType,
        split: SplitPaymentDetails | None = None,
    ) -> None:
        self.changes["payment_type"] = payment_type
        self.changes["split_payment_details"] = (
            split if payment_type == PaymentType.SPLIT else None
        )

    def on_enter_state(self, target: State) -> None:
        self.changes["status"] = target.value
        logger.debug(
            "request_status_changed",
            request_id=self.request.id,
            status=target.value.value,
        )


__all__ = [
    "RequestStatusMachine",
    "TransitionNotAllowed",
]
