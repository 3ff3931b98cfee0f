"""
Shared fixtures: a fresh in-memory database per test, a scripted gateway,
and small factories for users, share purchases and withdrawals.
"""
import os
import tempfile

os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("LOG_DIR", tempfile.mkdtemp(prefix="sharevest-logs-"))
os.environ.setdefault("SCHEDULER_ENABLED", "False")

import pytest

from app import create_app
from config import TestConfig
from extensions import db
from models import (User, ShareTransaction, ReferralAggregate,
                    TransactionStatus, SourceKind, Currency, PaymentMethod)
from settlement.withdrawal_state import WithdrawalRecordManager

from helpers import BANK_DETAILS, FakeGateway


@pytest.fixture
def app(tmp_path):
    app = create_app(TestConfig)
    app.config["RECEIPTS_DIR"] = str(tmp_path / "receipts")
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def supervisor(app):
    return app.extensions["settlement_supervisor"]


@pytest.fixture
def fake_gateway(supervisor):
    gateway = FakeGateway()
    supervisor.reconciler.gateway_factory = lambda: gateway
    return gateway


@pytest.fixture
def make_user(app):
    def _make_user(handle, referred_by=None, role="user", is_active=True, is_banned=False, email=None):
        user = User(
            handle=handle,
            referred_by=referred_by,
            role=role,
            is_active=is_active,
            is_banned=is_banned,
            email=email if email is not None else f"{handle.lower()}@example.com",
            full_name=handle.title(),
        )
        db.session.add(user)
        db.session.commit()
        return user
    return _make_user


@pytest.fixture
def make_purchase(app):
    def _make_purchase(user, amount, currency=Currency.NAIRA.value, kind=SourceKind.SHARE.value,
                       status=TransactionStatus.COMPLETED.value, source_ref=None):
        count = ShareTransaction.query.count() + 1
        tx = ShareTransaction(
            user_id=user.id,
            amount=amount,
            currency=currency,
            source_kind=kind,
            source_ref=source_ref or f"TX-{user.id}-{count}",
            status=status,
        )
        db.session.add(tx)
        db.session.commit()
        return tx
    return _make_purchase


@pytest.fixture
def seed_earnings(app):
    def _seed_earnings(user, amount, currency=Currency.NAIRA.value):
        aggregate = ReferralAggregate.query.filter_by(user_id=user.id, currency=currency).first()
        if aggregate is None:
            aggregate = ReferralAggregate(user_id=user.id, currency=currency)
            db.session.add(aggregate)
        aggregate.total_earnings = amount
        aggregate.gen1_earnings = amount
        db.session.commit()
        return aggregate
    return _seed_earnings


@pytest.fixture
def make_withdrawal(app, seed_earnings):
    def _make_withdrawal(user, amount, currency=Currency.NAIRA.value, client_reference=None):
        seed_earnings(user, amount, currency)
        return WithdrawalRecordManager.submit_withdrawal(
            user.id, amount, currency, PaymentMethod.BANK.value,
            payment_details=BANK_DETAILS, client_reference=client_reference,
        )
    return _make_withdrawal


@pytest.fixture
def login(client):
    def _login(user):
        with client.session_transaction() as sess:
            sess["user_id"] = user.id
        return client
    return _login
