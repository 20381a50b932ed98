from __future__ import annotations

from ..extensions import db
from ..money import money_str, rate_str
from ..time_utils import local_now, to_local_iso, to_utc_z


TRANSACTION_TYPE_INCOME = "income"
TRANSACTION_TYPE_EXPENSE = "expense"

TRANSACTION_TYPES = (TRANSACTION_TYPE_INCOME, TRANSACTION_TYPE_EXPENSE)

_INCOME_PER_ORDER_WHERE = "type = 'income' AND order_id IS NOT NULL"


class FinanceAccount(db.Model):
    """
    Cash/bank account that money moves through.

    balance is a cached running total of the account's transactions in its
    native currency (income adds, expense subtracts); finance_service keeps it
    in step with each insert.
    """
    __tablename__ = "finance_accounts"
    __table_args__ = (
        db.UniqueConstraint("name", "currency", name="uq_finance_accounts_name_currency"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(128), nullable=False)
    type = db.Column(db.String(32), nullable=False, default="bank")
    currency = db.Column(db.String(8), nullable=False, default="USD")
    balance = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "currency": self.currency,
            "balance": money_str(self.balance),
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }


class FinanceCategory(db.Model):
    __tablename__ = "finance_categories"
    __table_args__ = (
        db.UniqueConstraint("name", "type", name="uq_finance_categories_name_type"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(128), nullable=False)
    type = db.Column(db.String(16), nullable=False)

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "type": self.type}


class FinanceTransaction(db.Model):
    """
    One recorded money movement. Never mutated after insert.

    IDEMPOTENCY:
    At most one income row may reference a given order. The partial unique
    index enforces it; order_service checks first and treats a collision as
    "already recorded".

    amount is in the account's native currency; exchange_rate is the
    USD -> local rate in effect when the row was written, and
    amount_usd_equivalent = amount (USD) or amount / exchange_rate (otherwise).
    """
    __tablename__ = "finance_transactions"
    __table_args__ = (
        db.Index("ix_finance_transactions_date", "transaction_date"),
        db.Index(
            "uq_finance_transactions_income_order",
            "order_id",
            unique=True,
            sqlite_where=db.text(_INCOME_PER_ORDER_WHERE),
            postgresql_where=db.text(_INCOME_PER_ORDER_WHERE),
        ),
        db.CheckConstraint("amount > 0", name="ck_finance_transactions_amount_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    account_id = db.Column(db.Integer, db.ForeignKey("finance_accounts.id"), nullable=False, index=True)
    category_id = db.Column(db.Integer, db.ForeignKey("finance_categories.id"), nullable=True, index=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True, index=True)

    type = db.Column(db.String(16), nullable=False, index=True)
    amount = db.Column(db.Numeric(14, 2), nullable=False)
    currency = db.Column(db.String(8), nullable=False)
    exchange_rate = db.Column(db.Numeric(18, 6), nullable=False)
    amount_usd_equivalent = db.Column(db.Numeric(14, 2), nullable=False)

    description = db.Column(db.String(255), nullable=True)
    created_by = db.Column(db.Integer, db.ForeignKey("profiles.id"), nullable=True)

    # Business time, server-local wall clock (cash closings bucket on this)
    transaction_date = db.Column(db.DateTime, nullable=False, default=local_now)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    account = db.relationship("FinanceAccount", backref=db.backref("transactions", lazy=True))
    category = db.relationship("FinanceCategory")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "account_id": self.account_id,
            "category_id": self.category_id,
            "order_id": self.order_id,
            "type": self.type,
            "amount": money_str(self.amount),
            "currency": self.currency,
            "exchange_rate": rate_str(self.exchange_rate),
            "amount_usd_equivalent": money_str(self.amount_usd_equivalent),
            "description": self.description,
            "created_by": self.created_by,
            "transaction_date": to_local_iso(self.transaction_date),
            "created_at": to_utc_z(self.created_at),
        }


class CashClosing(db.Model):
    """
    Immutable end-of-day snapshot of finance transactions.

    One row per close_date; a second close for the same date is rejected,
    never merged.
    """
    __tablename__ = "cash_closings"
    __table_args__ = (
        db.UniqueConstraint("close_date", name="uq_cash_closings_close_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    close_date = db.Column(db.Date, nullable=False)

    summary_json = db.Column(db.JSON, nullable=False)
    total_income_usd = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    total_income_local = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    total_expense_usd = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    total_expense_local = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    total_orders = db.Column(db.Integer, nullable=False, default=0)

    notes = db.Column(db.Text, nullable=True)
    created_by = db.Column(db.Integer, db.ForeignKey("profiles.id"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "close_date": self.close_date.isoformat() if self.close_date else None,
            "summary_json": self.summary_json,
            "total_income_usd": money_str(self.total_income_usd),
            "total_income_local": money_str(self.total_income_local),
            "total_expense_usd": money_str(self.total_expense_usd),
            "total_expense_local": money_str(self.total_expense_local),
            "total_orders": self.total_orders,
            "notes": self.notes,
            "created_by": self.created_by,
            "created_at": to_utc_z(self.created_at),
        }
