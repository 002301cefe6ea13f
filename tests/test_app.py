from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

from exceptions import BatchFatalError
from models import BridgeRequest, RunLease, db, utcnow
from tests.conftest import reload

CRON_URL = '/api/bridge/cardano-to-solana/cron'


def test_cron_settles_pending_requests(client, make_request, chain):
    chain.signatures = ['tx123']
    bridge_request = make_request(dest_address='Sol1DestinationAddress', dest_amount=100)

    response = client.get(CRON_URL)

    assert response.status_code == 204
    assert response.data == b''
    assert response.headers['X-Accel-Buffering'] == 'no'
    bridge_request = reload(bridge_request)
    assert bridge_request.done is True
    assert bridge_request.dest_tx_hash == 'tx123'


def test_cron_with_empty_queue_returns_no_content(client, chain, chain_factory):
    response = client.get(CRON_URL)

    assert response.status_code == 204
    assert chain.calls == []
    assert chain_factory.calls == 0


@pytest.mark.parametrize('method', ['post', 'put', 'patch', 'delete', 'head', 'options'])
def test_cron_rejects_other_methods(client, make_request, chain, method):
    make_request()

    response = getattr(client, method)(CRON_URL)

    assert response.status_code == 405
    assert response.headers['Allow'] == 'GET'
    assert chain.calls == []


def test_cron_unknown_route(client):
    response = client.get('/api/bridge/dogecoin-to-solana/cron')

    assert response.status_code == 404


def test_cron_returns_server_error_on_batch_fatal(app, client, make_request):
    make_request()

    def broken_factory(route):
        raise BatchFatalError('Settlement authority key is not configured')

    app.config['BRIDGE_CHAIN_FACTORY'] = broken_factory

    response = client.get(CRON_URL)

    assert response.status_code == 500


def test_cron_returns_server_error_on_unexpected_exception(app, client, make_request):
    make_request()

    def broken_factory(route):
        raise RuntimeError('boom')

    app.config['BRIDGE_CHAIN_FACTORY'] = broken_factory

    response = client.get(CRON_URL)

    assert response.status_code == 500


def test_cron_returns_server_error_when_store_fails(client, make_request, chain, route, monkeypatch):
    make_request()

    def failing_pending(*args):
        raise OperationalError('SELECT bridge_requests', {}, Exception('database is locked'))

    monkeypatch.setattr(BridgeRequest, 'pending', failing_pending)

    response = client.get(CRON_URL)

    assert response.status_code == 500
    assert chain.calls == []
    assert db.session.get(RunLease, route.name).expires_at <= utcnow()


def test_cron_skips_when_lease_is_held(client, make_request, chain, route):
    bridge_request = make_request()
    db.session.add(RunLease(name=route.name, holder='other-run', expires_at=utcnow() + timedelta(minutes=5)))
    db.session.commit()

    response = client.get(CRON_URL)

    assert response.status_code == 204
    assert chain.calls == []
    assert reload(bridge_request).done is False


def test_cron_crash_then_rerun_does_not_pay_twice(client, make_request, chain, monkeypatch):
    bridge_request = make_request()
    original = BridgeRequest.mark_settled

    def failing_mark_settled(self, tx_hash):
        raise OperationalError('UPDATE bridge_requests', {}, Exception('database is locked'))

    monkeypatch.setattr(BridgeRequest, 'mark_settled', failing_mark_settled)
    assert client.get(CRON_URL).status_code == 500

    monkeypatch.setattr(BridgeRequest, 'mark_settled', original)
    assert client.get(CRON_URL).status_code == 204

    bridge_request = reload(bridge_request)
    assert bridge_request.done is True
    assert bridge_request.dest_tx_hash == 'tx1'
    assert len(chain.submissions) == 1


class TestCronSecret:
    @pytest.fixture(autouse=True)
    def secret(self, app):
        app.config['CRON_SECRET'] = 's3cret'

    def test_missing_header_is_rejected(self, client, make_request, chain):
        make_request()

        response = client.get(CRON_URL)

        assert response.status_code == 401
        assert chain.calls == []

    def test_wrong_secret_is_rejected(self, client):
        response = client.get(CRON_URL, headers={'Authorization': 'Bearer nope'})

        assert response.status_code == 401

    def test_matching_secret_runs(self, client):
        response = client.get(CRON_URL, headers={'Authorization': 'Bearer s3cret'})

        assert response.status_code == 204

    def test_retry_requires_secret(self, client, make_request):
        bridge_request = make_request(status=BridgeRequest.FAILED, failure_reason='bad')

        response = client.post(f'/api/bridge/cardano-to-solana/requests/{bridge_request.id}/retry')

        assert response.status_code == 401


class TestRequestEndpoints:
    def test_get_request(self, client, make_request):
        bridge_request = make_request(dest_address='SolAddress', dest_amount=42)

        response = client.get(f'/api/bridge/cardano-to-solana/requests/{bridge_request.id}')

        assert response.status_code == 200
        data = response.get_json()
        assert data['id'] == bridge_request.id
        assert data['destAddress'] == 'SolAddress'
        assert data['destAmount'] == 42
        assert data['destTxHash'] is None
        assert data['done'] is False
        assert data['status'] == 'PENDING'

    def test_get_unknown_request(self, client):
        response = client.get('/api/bridge/cardano-to-solana/requests/missing')

        assert response.status_code == 404

    def test_list_requests_filters_by_status(self, client, make_request):
        make_request()
        failed = make_request(status=BridgeRequest.FAILED, failure_reason='bad address')

        response = client.get('/api/bridge/cardano-to-solana/requests?status=failed')

        assert response.status_code == 200
        data = response.get_json()
        assert [r['id'] for r in data] == [failed.id]
        assert data[0]['failureReason'] == 'bad address'

    def test_list_requests_newest_first(self, client, make_request):
        older = make_request()
        newer = make_request()

        data = client.get('/api/bridge/cardano-to-solana/requests').get_json()

        assert [r['id'] for r in data] == [newer.id, older.id]

    def test_list_requests_rejects_unknown_status(self, client):
        response = client.get('/api/bridge/cardano-to-solana/requests?status=LOST')

        assert response.status_code == 400

    def test_retry_moves_failed_request_back_to_pending(self, client, make_request, chain):
        bridge_request = make_request(
            status=BridgeRequest.FAILED,
            failure_reason='insufficient funds',
            attempt_signature='tx-old',
            attempt_last_valid_height=10,
        )

        response = client.post(f'/api/bridge/cardano-to-solana/requests/{bridge_request.id}/retry')

        assert response.status_code == 200
        assert response.get_json()['status'] == 'PENDING'
        bridge_request = reload(bridge_request)
        assert bridge_request.failure_reason is None
        assert bridge_request.attempt_signature is None

        assert client.get(CRON_URL).status_code == 204
        assert reload(bridge_request).done is True

    def test_retry_rejects_request_that_is_not_failed(self, client, make_request):
        bridge_request = make_request()

        response = client.post(f'/api/bridge/cardano-to-solana/requests/{bridge_request.id}/retry')

        assert response.status_code == 409


def test_settle_command(app, make_request, chain):
    bridge_request = make_request()

    result = app.test_cli_runner().invoke(args=['settle'])

    assert result.exit_code == 0
    assert 'settled=1' in result.output
    assert reload(bridge_request).done is True


def test_settle_command_unknown_route(app):
    result = app.test_cli_runner().invoke(args=['settle', 'nowhere'])

    assert result.exit_code != 0
    assert 'Unknown bridge route' in result.output
