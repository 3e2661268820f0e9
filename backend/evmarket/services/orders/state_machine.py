"""Order state machine implementation with transition validation.

This module implements the OrderStateMachine class. It validates a requested
status against the transition graph and the actor's role, and works out the
column changes and side effects the transition implies. It never touches
storage: ``OrderService`` applies the plan with a conditional update so a
concurrent change makes the plan stale instead of being overwritten.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from evmarket.core.errors import InvalidTransition, PermissionDeniedError
from evmarket.core.identity import UserRole
from evmarket.core.logging import get_logger
from evmarket.database.base import utc_now
from evmarket.database.models.order import VehicleOrder
from evmarket.services.orders.enums import (
    DEALER_ORDER_STATUSES,
    OrderStatus,
    get_allowed_order_transitions,
    validate_order_status_transition,
)

logger = get_logger(__name__)

DEFAULT_CANCELLATION_REASON = "Cancelled by administrator"


@dataclass
class OrderTransition:
    """Planned transition and the side effects bound to it."""

    current: OrderStatus
    target: OrderStatus
    changes: Dict[str, Any] = field(default_factory=dict)
    release_reservation: bool = False
    restore_stock: bool = False
    refund_due: bool = False


class OrderStateMachine:
    """State machine for vehicle order lifecycle transitions.

    Side effects are declared per target status; each one only adds to the
    transition plan.
    """

    def __init__(self, clock: Callable[[], datetime] = utc_now):
        self._clock = clock
        self._side_effects: Dict[
            OrderStatus,
            Callable[[VehicleOrder, OrderTransition, Dict[str, Any]], None],
        ] = {
            OrderStatus.SHIPPED: self._effect_shipped,
            OrderStatus.CANCELLED: self._effect_cancelled,
        }

    def authorize(self, actor_role: UserRole, target: OrderStatus) -> None:
        """
        Role gating.

        Raises:
            PermissionDeniedError: If the role may not drive ``target``
        """
        if actor_role == UserRole.ADMIN:
            return
        if actor_role == UserRole.DEALER and target in DEALER_ORDER_STATUSES:
            return
        raise PermissionDeniedError(
            f"Role {actor_role.value} cannot set order status to {target.value}",
            role=actor_role.value,
            target=target.value,
        )

    def validate_transition(self, current: OrderStatus, target: OrderStatus) -> None:
        """
        Raises:
            InvalidTransition: If ``target`` is not an allowed successor
        """
        if not validate_order_status_transition(current, target):
            raise InvalidTransition(
                current.value,
                target.value,
                allowed=[s.value for s in get_allowed_order_transitions(current)],
            )

    def plan(
        self,
        order: VehicleOrder,
        target: OrderStatus,
        actor_role: UserRole,
        tracking_number: Optional[str] = None,
        notes: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> OrderTransition:
        """
        Validate a transition and compute its effects.

        Args:
            order: Current order row
            target: Requested status
            actor_role: Role of the acting user
            tracking_number: Carrier reference, kept when entering ``shipped``
            notes: Free-text status notes
            reason: Cancellation reason

        Returns:
            Transition plan with the column changes to apply
        """
        current = order.order_status
        self.authorize(actor_role, target)
        self.validate_transition(current, target)

        now = self._clock()
        transition = OrderTransition(
            current=current,
            target=target,
            changes={"order_status": target, target.timestamp_field: now},
        )
        if notes:
            transition.changes["status_notes"] = notes

        effect = self._side_effects.get(target)
        if effect is not None:
            effect(order, transition, {"tracking_number": tracking_number, "reason": reason})

        logger.info(
            "Order transition planned",
            order_id=str(order.id),
            transition=f"{current.value}->{target.value}",
            role=actor_role.value,
            restore_stock=transition.restore_stock,
            refund_due=transition.refund_due,
        )
        return transition

    def _effect_shipped(
        self, order: VehicleOrder, transition: OrderTransition, options: Dict[str, Any]
    ) -> None:
        if options.get("tracking_number"):
            transition.changes["tracking_number"] = options["tracking_number"]

    def _effect_cancelled(
        self, order: VehicleOrder, transition: OrderTransition, options: Dict[str, Any]
    ) -> None:
        transition.changes["cancellation_reason"] = (
            options.get("reason") or DEFAULT_CANCELLATION_REASON
        )
        # Only units that capture actually took off the counter go back.
        transition.restore_stock = order.stock_committed
        if transition.restore_stock:
            transition.changes["stock_committed"] = False
        transition.refund_due = order.payment_status.can_refund()
        transition.release_reservation = transition.current == OrderStatus.PENDING
