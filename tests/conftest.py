"""
Shared fixtures: an app on in-memory SQLite and a fake destination chain
that records every call made against it.
"""

from datetime import timedelta

import pytest

from app import create_app
from bridge_worker import BridgeSettlementWorker
from config import TestingConfig
from exceptions import PermanentRequestError, TransientChainError
from models import BridgeRequest, db, utcnow
from solana_client import TRANSFER_CONFIRMED

# Submit outcome: the transfer lands but the client never hears back
LAND_THEN_TIMEOUT = object()


def reload(bridge_request):
    db.session.expire_all()
    return db.session.get(BridgeRequest, bridge_request.id)


class FakePrepared:
    def __init__(self, signature, last_valid_block_height, source, dest, amount, memo):
        self.signature = signature
        self.last_valid_block_height = last_valid_block_height
        self.source = source
        self.dest = dest
        self.amount = amount
        self.memo = memo


class FakeChain:
    def __init__(self):
        self.calls = []
        self.landed = []
        self.signatures = []
        self.account_failures = {}
        self.submit_failures = []
        self.authority_failures = []
        self.on_prepare = None
        self.block_height = 100
        self.validity_window = 150
        self._counter = 0

    def authority_token_account(self):
        self.calls.append(('authority',))
        if self.authority_failures:
            raise self.authority_failures.pop(0)
        return 'ATA-authority'

    def get_or_create_token_account(self, owner_address):
        self.calls.append(('resolve', owner_address))
        failures = self.account_failures.get(owner_address)
        if failures:
            raise failures.pop(0)
        if not owner_address.startswith('Sol'):
            raise PermanentRequestError(f'Invalid destination address {owner_address!r}')
        return f'ATA-{owner_address}'

    def prepare_transfer(self, source, dest, amount, memo):
        if self.on_prepare:
            hook, self.on_prepare = self.on_prepare, None
            hook()
        self._counter += 1
        signature = self.signatures.pop(0) if self.signatures else f'tx{self._counter}'
        return FakePrepared(
            signature, self.block_height + self.validity_window, source, dest, amount, memo
        )

    def submit_transfer(self, prepared):
        self.calls.append(('submit', prepared.signature))
        if self.submit_failures:
            failure = self.submit_failures.pop(0)
            if failure is LAND_THEN_TIMEOUT:
                self.landed.append(prepared)
                raise TransientChainError('Transfer confirmation timed out')
            raise failure
        self.landed.append(prepared)
        return prepared.signature

    def get_transfer_status(self, signature):
        self.calls.append(('status', signature))
        if any(p.signature == signature for p in self.landed):
            return TRANSFER_CONFIRMED
        return None

    def find_transfer(self, token_account, memo):
        self.calls.append(('history', token_account))
        for prepared in self.landed:
            if prepared.dest == token_account and prepared.memo == memo:
                return prepared.signature
        return None

    def get_block_height(self):
        return self.block_height

    @property
    def submissions(self):
        return [c for c in self.calls if c[0] == 'submit']


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def chain_factory(chain):
    def factory(route):
        factory.calls += 1
        return chain

    factory.calls = 0
    return factory


@pytest.fixture
def app(chain_factory):
    app = create_app(TestingConfig, BRIDGE_CHAIN_FACTORY=chain_factory)
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def route(app):
    return app.extensions['bridge_routes'][TestingConfig.BRIDGE_ROUTE_NAME]


@pytest.fixture
def make_request(app):
    base = utcnow() - timedelta(hours=1)
    created = []

    def make(dest_address='Sol1DestinationAddress', dest_amount=100, **fields):
        bridge_request = BridgeRequest(
            route=fields.pop('route', TestingConfig.BRIDGE_ROUTE_NAME),
            source_tx_hash=fields.pop('source_tx_hash', f'adatx{len(created)}'),
            source_address=fields.pop('source_address', 'addr1qxsourceaddress'),
            source_amount=fields.pop('source_amount', 100),
            dest_address=dest_address,
            dest_amount=dest_amount,
            created_at=base + timedelta(seconds=len(created)),
            **fields,
        )
        db.session.add(bridge_request)
        db.session.commit()
        created.append(bridge_request)
        return bridge_request

    return make


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def make_worker(app, route, chain_factory, sleeps):
    def make(**kwargs):
        kwargs.setdefault('max_attempts', 5)
        kwargs.setdefault('retry_delay', 0.5)
        kwargs.setdefault('max_retry_delay', 10.0)
        kwargs.setdefault('sleep', sleeps.append)
        return BridgeSettlementWorker(route, chain_factory, **kwargs)

    return make
