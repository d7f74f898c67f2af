"""
Simulated third-party payment flow.

initiate_payment() records a PENDING payment and returns the reference plus
the URL of the mock provider page. The provider calls back with that
reference; execute_payment() then flips Payment -> SUCCESS and Order -> PAID
as one unit. Duplicate callbacks are no-ops.
"""

import logging
import os

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

import config
from database import create_document, oid, run_in_transaction, serialize, utcnow
from errors import BadRequestError, ConflictError, NotFoundError, UnauthorizedError
from notifications import PAYMENT_SUCCESS, dispatch
from schemas import OrderStatus, Payment, PaymentStatus

logger = logging.getLogger(__name__)


def new_reference() -> str:
    return "PAY-" + os.urandom(8).hex().upper()


def provider_page_url(reference: str) -> str:
    return f"{config.API_BASE_URL}/api/v1/payments/mock-{config.PAYMENT_PROVIDER}-page?paymentID={reference}"


class PaymentService:
    def __init__(self, db, notifier=None):
        self.db = db
        self.notifier = notifier

    def initiate_payment(self, user_id: str, order_id: str) -> dict:
        order = self.db["order"].find_one({"_id": oid(order_id)})
        if not order:
            raise NotFoundError("Order not found")
        if order["user_id"] != user_id:
            raise UnauthorizedError("Unauthorized")
        if order["status"] == OrderStatus.CANCELLED.value:
            raise BadRequestError("Cannot pay for a cancelled order")
        if order["status"] != OrderStatus.PENDING.value:
            raise BadRequestError("Order already paid")

        existing = self.db["payment"].find_one({"order_id": order_id})
        if existing and existing["status"] == PaymentStatus.PENDING.value:
            # The customer came back to pay; hand out the same reference
            reference = existing["transaction_id"]
        else:
            reference = new_reference()
            payment = Payment(
                order_id=order_id,
                amount=order["total_amount"],
                transaction_id=reference,
                provider=config.PAYMENT_PROVIDER,
            )
            try:
                create_document(self.db, "payment", payment)
            except DuplicateKeyError:
                raise ConflictError("A payment for this order is already in progress")
            logger.info("Payment %s initiated for order %s (%d)", reference, order_id, payment.amount)

        return {"paymentID": reference, "redirectURL": provider_page_url(reference)}

    def execute_payment(self, reference: str) -> dict:
        payment = self.db["payment"].find_one({"transaction_id": reference})
        if not payment:
            raise NotFoundError("Invalid Payment ID")
        if payment["status"] == PaymentStatus.SUCCESS.value:
            logger.info("Duplicate callback for payment %s ignored", reference)
            return serialize(payment)

        def execute(tx):
            payments = self.db["payment"]
            claimed = payments.find_one_and_update(
                {"_id": payment["_id"], "status": PaymentStatus.PENDING.value},
                {"$set": {"status": PaymentStatus.SUCCESS.value, "updated_at": utcnow()}},
                return_document=ReturnDocument.AFTER,
                session=tx.session,
            )
            if claimed is None:
                current = payments.find_one({"_id": payment["_id"]}, session=tx.session)
                if current["status"] == PaymentStatus.SUCCESS.value:
                    # A concurrent callback got here first
                    return current, False
                raise BadRequestError("Payment can no longer be completed")
            tx.on_rollback(payments.update_one,
                           {"_id": payment["_id"], "status": PaymentStatus.SUCCESS.value},
                           {"$set": {"status": PaymentStatus.PENDING.value}})

            order = self.db["order"].find_one_and_update(
                {"_id": oid(payment["order_id"]), "status": OrderStatus.PENDING.value},
                {"$set": {"status": OrderStatus.PAID.value, "updated_at": utcnow()}},
                return_document=ReturnDocument.AFTER,
                session=tx.session,
            )
            if order is None:
                raise BadRequestError("Order can no longer be paid")
            return claimed, True

        result, first = run_in_transaction(self.db, execute)
        if first:
            logger.info("Payment %s succeeded, order %s marked PAID", reference, payment["order_id"])
            self._notify_paid(result)
        return serialize(result)

    def _notify_paid(self, payment: dict) -> None:
        try:
            order = self.db["order"].find_one({"_id": oid(payment["order_id"])})
            user = self.db["user"].find_one({"_id": oid(order["user_id"])})
        except Exception:
            logger.exception("Could not look up recipient for payment %s", payment["transaction_id"])
            return
        dispatch(self.notifier, user and user.get("email"), PAYMENT_SUCCESS, {
            "order_id": payment["order_id"],
            "amount": payment["amount"],
        })
