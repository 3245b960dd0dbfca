# cinehold/infrastructure/repositories/checkout_repository.py

import json
from collections.abc import Iterable
from datetime import datetime

from sqlalchemy.orm import Session
from sqlalchemy import delete, select, update

from cinehold.infrastructure.db.models import (
    CheckoutSession,
    ComboSelection,
    OutboxEvent,
    PaymentCallbackEvent,
    PaymentTransaction,
)
from cinehold.domain.state_machine import CheckoutStatus, TransactionStatus


class CheckoutRepository:

    def __init__(self, db: Session):
        self.db = db

    # -----------------------------
    # Sessions
    # -----------------------------
    def get_session(self, session_id: str, for_update: bool = False) -> CheckoutSession | None:
        stmt = select(CheckoutSession).where(CheckoutSession.id == session_id)
        if for_update:
            stmt = stmt.with_for_update()
        return self.db.execute(stmt).scalar_one_or_none()

    def create_session(
        self,
        session_id: str,
        slot_id: int,
        hold_id: str,
        expires_at: datetime,
    ) -> CheckoutSession:
        session = CheckoutSession(
            id=session_id,
            slot_id=slot_id,
            hold_id=hold_id,
            status=CheckoutStatus.SELECTING,
            expires_at=expires_at,
        )
        self.db.add(session)
        self.db.flush()
        return session

    def compare_and_set_status(
        self,
        session_id: str,
        expected: Iterable[CheckoutStatus],
        new_status: CheckoutStatus,
        **values,
    ) -> bool:
        """
        UPDATE ... WHERE status IN (:expected). The rowcount decides
        whether this caller owns the transition.
        """
        stmt = (
            update(CheckoutSession)
            .where(CheckoutSession.id == session_id)
            .where(CheckoutSession.status.in_(list(expected)))
            .values(status=new_status, **values)
            .execution_options(synchronize_session=False)
        )
        won = self.db.execute(stmt).rowcount == 1
        session = self.db.get(CheckoutSession, session_id)
        if session is not None:
            self.db.refresh(session)
        return won

    def list_overdue(
        self,
        now: datetime,
        slot_id: int | None = None,
        limit: int = 500,
    ) -> list[CheckoutSession]:
        stmt = (
            select(CheckoutSession)
            .where(
                CheckoutSession.status.in_(
                    [CheckoutStatus.SELECTING, CheckoutStatus.AWAITING_PAYMENT]
                )
            )
            .where(CheckoutSession.expires_at <= now)
        )
        if slot_id is not None:
            stmt = stmt.where(CheckoutSession.slot_id == slot_id)
        stmt = stmt.order_by(CheckoutSession.expires_at).limit(limit)
        return list(self.db.execute(stmt).scalars().all())

    # -----------------------------
    # Combo selections
    # -----------------------------
    def list_combos(self, session_id: str) -> list[ComboSelection]:
        stmt = (
            select(ComboSelection)
            .where(ComboSelection.session_id == session_id)
            .order_by(ComboSelection.product_id)
        )
        return list(self.db.execute(stmt).scalars().all())

    def add_combo(
        self,
        session_id: str,
        product_id: int,
        product_name: str,
        unit_price: int,
        quantity: int,
    ) -> ComboSelection:
        item = ComboSelection(
            session_id=session_id,
            product_id=product_id,
            product_name=product_name,
            unit_price=unit_price,
            quantity=quantity,
        )
        self.db.add(item)
        self.db.flush()
        return item

    def remove_combos(self, session_id: str, product_ids: list[int]) -> None:
        if not product_ids:
            return
        stmt = (
            delete(ComboSelection)
            .where(ComboSelection.session_id == session_id)
            .where(ComboSelection.product_id.in_(product_ids))
        )
        self.db.execute(stmt)

    # -----------------------------
    # Payment transactions
    # -----------------------------
    def get_transaction(self, order_id: str, for_update: bool = False) -> PaymentTransaction | None:
        stmt = select(PaymentTransaction).where(PaymentTransaction.order_id == order_id)
        if for_update:
            stmt = stmt.with_for_update()
        return self.db.execute(stmt).scalar_one_or_none()

    def get_pending_transaction(self, session_id: str) -> PaymentTransaction | None:
        stmt = (
            select(PaymentTransaction)
            .where(PaymentTransaction.session_id == session_id)
            .where(PaymentTransaction.status == TransactionStatus.PENDING)
        )
        return self.db.execute(stmt).scalars().first()

    def create_transaction(
        self,
        order_id: str,
        session_id: str,
        amount: int,
        currency: str,
        request_params: dict,
        payment_url: str,
    ) -> PaymentTransaction:
        transaction = PaymentTransaction(
            order_id=order_id,
            session_id=session_id,
            amount=amount,
            currency=currency,
            status=TransactionStatus.PENDING,
            request_params=json.dumps(request_params, sort_keys=True),
            payment_url=payment_url,
        )
        self.db.add(transaction)
        self.db.flush()
        return transaction

    def finalize_transaction(
        self,
        order_id: str,
        new_status: TransactionStatus,
        **values,
    ) -> bool:
        stmt = (
            update(PaymentTransaction)
            .where(PaymentTransaction.order_id == order_id)
            .where(PaymentTransaction.status == TransactionStatus.PENDING)
            .values(status=new_status, **values)
            .execution_options(synchronize_session=False)
        )
        won = self.db.execute(stmt).rowcount == 1
        transaction = self.db.get(PaymentTransaction, order_id)
        if transaction is not None:
            self.db.refresh(transaction)
        return won

    def invalidate_pending_transactions(self, session_id: str, now: datetime) -> int:
        stmt = (
            update(PaymentTransaction)
            .where(PaymentTransaction.session_id == session_id)
            .where(PaymentTransaction.status == TransactionStatus.PENDING)
            .values(status=TransactionStatus.INVALIDATED, finalized_at=now)
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount

    # -----------------------------
    # Callback audit
    # -----------------------------
    def record_callback(
        self,
        provider: str,
        order_id: str | None,
        response_code: str | None,
        signature_valid: bool,
        outcome: str,
        payload_hash: str,
    ) -> PaymentCallbackEvent:
        event = PaymentCallbackEvent(
            provider=provider,
            order_id=order_id,
            response_code=response_code,
            signature_valid=signature_valid,
            outcome=outcome,
            payload_hash=payload_hash,
        )
        self.db.add(event)
        self.db.flush()
        return event

    def list_callbacks(self, order_id: str) -> list[PaymentCallbackEvent]:
        stmt = (
            select(PaymentCallbackEvent)
            .where(PaymentCallbackEvent.order_id == order_id)
            .order_by(PaymentCallbackEvent.created_at)
        )
        return list(self.db.execute(stmt).scalars().all())

    # -----------------------------
    # Outbox
    # -----------------------------
    def add_outbox_event(
        self,
        aggregate_type: str,
        aggregate_id: str,
        event_type: str,
        payload: dict,
        dedupe_key: str,
    ) -> bool:
        existing = self.db.execute(
            select(OutboxEvent).where(OutboxEvent.dedupe_key == dedupe_key)
        ).scalar_one_or_none()
        if existing:
            return False

        self.db.add(
            OutboxEvent(
                aggregate_type=aggregate_type,
                aggregate_id=aggregate_id,
                event_type=event_type,
                payload=json.dumps(payload, sort_keys=True),
                dedupe_key=dedupe_key,
                status="PENDING",
                attempts=0,
            )
        )
        self.db.flush()
        return True

    def list_outbox_events(self, status_filter: str, limit: int) -> list[OutboxEvent]:
        stmt = (
            select(OutboxEvent)
            .where(OutboxEvent.status == status_filter)
            .order_by(OutboxEvent.created_at)
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    def get_outbox_event(self, event_id: str) -> OutboxEvent | None:
        stmt = select(OutboxEvent).where(OutboxEvent.id == event_id)
        return self.db.execute(stmt).scalar_one_or_none()
