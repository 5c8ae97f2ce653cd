"""
Payment — クエリハンドラ (CQRS Read 側)
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..types import PaymentMethod, PaymentStatus

METHOD_LABELS = {
    PaymentMethod.COD: "Cash on Delivery",
    PaymentMethod.DEBIT_CARD: "Debit Card",
    PaymentMethod.CREDIT_CARD: "Credit Card",
    PaymentMethod.UPI: "UPI",
    PaymentMethod.NET_BANKING: "Net Banking",
    PaymentMethod.WALLET: "Wallet",
}


def _payment(row) -> dict:
    return {
        "id": row.id,
        "order_number": row.order_number,
        "method": row.method,
        "status": row.status,
        "amount": row.amount,
        "transaction_id": row.transaction_id,
        "failure_reason": row.failure_reason,
        "created_at": row.created_at,
        "updated_at": row.updated_at,
    }


async def get_payment(session: AsyncSession, payment_id: str) -> dict | None:
    result = await session.execute(
        text("SELECT * FROM payments WHERE id = :id"),
        {"id": payment_id},
    )
    row = result.fetchone()
    if not row:
        return None
    return _payment(row)


async def list_payments(session: AsyncSession, order_number: str) -> list[dict]:
    result = await session.execute(
        text("""
            SELECT * FROM payments
            WHERE order_number = :order_number
            ORDER BY created_at ASC, id
        """),
        {"order_number": order_number},
    )
    return [_payment(row) for row in result.fetchall()]


async def latest_payment(
    session: AsyncSession,
    order_number: str,
    status: PaymentStatus | None = None,
) -> dict | None:
    payments = await list_payments(session, order_number)
    if status is not None:
        payments = [p for p in payments if p["status"] == status.value]
    return payments[-1] if payments else None


def payment_methods() -> list[dict]:
    return [{"id": method.value, "name": label} for method, label in METHOD_LABELS.items()]
