"""
Pytest fixtures for ledger backend tests.

Provides test database setup, a recording event publisher, document factories
and test client.
"""

from datetime import timedelta

import pytest
from docledger import create_app
from docledger.collaborators import RecordingEventPublisher, StaticCatalog
from docledger.extensions import db
from docledger.services import document_service, lifecycle_service
from docledger.time_utils import today


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'LEDGER_DEFAULT_CURRENCY': 'USD',
        'LEDGER_RETRY_ATTEMPTS': 2,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()
        app.config['LEDGER_ALLOW_OVERPAYMENT'] = False


@pytest.fixture(scope='function')
def publisher(app):
    """Capture published events instead of logging them."""
    recorder = RecordingEventPublisher()
    app.extensions['ledger_event_publisher'] = recorder
    yield recorder
    app.extensions.pop('ledger_event_publisher', None)


@pytest.fixture(scope='function')
def catalog(app):
    entries = StaticCatalog({
        "P-1": {"name": "Widget", "sku": "WID-1"},
        "P-2": {"name": "Gadget", "sku": "GAD-2"},
    })
    app.extensions['ledger_catalog'] = entries
    yield entries
    app.extensions.pop('ledger_catalog', None)


@pytest.fixture(scope='function')
def make_document(db_session, publisher):
    """
    Factory for documents.

    make_document("300.00") gives an INVOICE that has been sent, with one line
    of quantity 1 at that price. issue=False leaves it in draft.
    """
    def _make(
        total="100.00",
        *,
        document_type="INVOICE",
        counterparty_ref="CUST-1",
        issue_date=None,
        due_date=None,
        items=None,
        currency=None,
        issue=True,
    ):
        document = document_service.create_document(
            document_type=document_type,
            counterparty_ref=counterparty_ref,
            items=items or [{"product_ref": "P-1", "quantity": "1", "unit_price": total}],
            issue_date=issue_date,
            due_date=due_date,
            currency=currency,
        )
        if issue:
            event = "send" if document_type in ("INVOICE", "QUOTATION") else "confirm"
            document = lifecycle_service.transition_document(document.id, event)
        return document

    return _make


@pytest.fixture(scope='function')
def past_due_dates():
    """(issue_date, due_date) with the due date yesterday."""
    return today() - timedelta(days=30), today() - timedelta(days=1)
