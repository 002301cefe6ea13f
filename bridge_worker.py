import logging
import time
import uuid

from sqlalchemy.exc import SQLAlchemyError

from exceptions import (
    BatchFatalError,
    PermanentRequestError,
    RetriesExhausted,
    SettlementInFlight,
    TransientChainError,
)
from models import BridgeRequest, RunLease, db
from solana_client import TRANSFER_CONFIRMED, TRANSFER_FAILED


class BridgeSettlementWorker:
    """
    Settles pending bridge requests of one route on the destination chain.

    Requests are handled one at a time because every transfer is signed by
    the same settlement authority. Each run holds the route lease, and every
    transfer attempt is recorded before it is sent so an interrupted run can
    be reconciled instead of paid twice.
    """

    def __init__(self, route, chain_factory, max_attempts=5, retry_delay=1.0, max_retry_delay=30.0,
                 lease_seconds=900, max_duration=300, logger=None, sleep=time.sleep,
                 clock=time.monotonic):
        self.route = route
        self.chain_factory = chain_factory
        self.chain = None
        self.max_attempts = max(1, max_attempts)
        self.retry_delay = retry_delay
        self.max_retry_delay = max_retry_delay
        self.lease_seconds = lease_seconds
        self.max_duration = max_duration
        self.logger = logger or logging.getLogger(__name__)
        self.sleep = sleep
        self.clock = clock
        self.holder = uuid.uuid4().hex

    @classmethod
    def from_config(cls, route, chain_factory, config, logger=None):
        return cls(
            route,
            chain_factory,
            max_attempts=config['BRIDGE_MAX_ATTEMPTS'],
            retry_delay=config['BRIDGE_RETRY_DELAY'],
            max_retry_delay=config['BRIDGE_RETRY_MAX_DELAY'],
            lease_seconds=config['BRIDGE_LEASE_SECONDS'],
            max_duration=config['BRIDGE_MAX_DURATION'],
            logger=logger,
        )

    def run(self):
        summary = {
            'route': self.route.name,
            'skipped': False,
            'settled': [],
            'failed': [],
            'deferred': [],
        }
        deadline = self.clock() + self.max_duration

        try:
            acquired = RunLease.acquire(self.route.name, self.holder, self.lease_seconds)
        except SQLAlchemyError as e:
            db.session.rollback()
            raise BatchFatalError(f'Could not acquire lease for {self.route.name}: {e}') from e

        if not acquired:
            self.logger.info(f'Bridge run for {self.route.name} skipped: another run holds the lease')
            summary['skipped'] = True
            return summary

        try:
            self._process_batch(summary, deadline)
        finally:
            self._release_lease()

        self.logger.info(
            f'Bridge run for {self.route.name} finished: '
            f'settled={len(summary["settled"])} failed={len(summary["failed"])} '
            f'deferred={len(summary["deferred"])}'
        )
        return summary

    def _process_batch(self, summary, deadline):
        try:
            pending = BridgeRequest.pending(self.route.name)
        except SQLAlchemyError as e:
            db.session.rollback()
            raise BatchFatalError(f'Could not read pending requests: {e}') from e

        if not pending:
            self.logger.debug(f'No pending bridge requests for {self.route.name}')
            return

        self.logger.info(f'Processing {len(pending)} pending bridge requests for {self.route.name}')
        self.chain = self.chain_factory(self.route)

        try:
            source = self._with_retries(
                'Resolving authority token account', self.chain.authority_token_account
            )
        except (RetriesExhausted, PermanentRequestError) as e:
            raise BatchFatalError(f'Settlement authority token account unavailable: {e}') from e

        for index, bridge_request in enumerate(pending):
            if self.clock() >= deadline:
                remaining = [r.id for r in pending[index:]]
                summary['deferred'].extend(remaining)
                self.logger.warning(
                    f'Run deadline reached for {self.route.name}, '
                    f'{len(remaining)} requests left for the next run'
                )
                break

            outcome = self._process_request(bridge_request, source)
            summary[outcome].append(bridge_request.id)
            self._hold_lease()

    def _process_request(self, bridge_request, source):
        request_id = bridge_request.id
        try:
            return self._settle(bridge_request, source)
        except PermanentRequestError as e:
            self._fail(bridge_request, str(e))
            return 'failed'
        except RetriesExhausted as e:
            if bridge_request.attempt_signature:
                # A transfer may still be out there, the next run reconciles it
                self._log_outcome(bridge_request, 'deferred', reason=str(e))
                return 'deferred'
            self._fail(bridge_request, str(e))
            return 'failed'
        except BatchFatalError:
            raise
        except SQLAlchemyError as e:
            db.session.rollback()
            raise BatchFatalError(f'Store update failed for bridge request {request_id}: {e}') from e
        except Exception as e:
            self.logger.exception(f'Unexpected error settling bridge request {request_id}: {e}')
            db.session.rollback()
            return 'deferred'

    def _settle(self, bridge_request, source):
        amount = bridge_request.dest_amount
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise PermanentRequestError(f'Invalid destination amount {amount!r}')

        dest = self._with_retries(
            f'Resolving token account for {bridge_request.dest_address}',
            self.chain.get_or_create_token_account,
            bridge_request.dest_address,
        )

        bridge_request.ensure_idempotency_key()
        self._commit()

        tx_hash = self._with_retries(
            f'Transferring {amount} to {bridge_request.dest_address}',
            self._transfer_once,
            bridge_request,
            source,
            dest,
        )

        self._hold_lease()
        bridge_request.mark_settled(tx_hash)
        self._commit()
        self._log_outcome(bridge_request, 'settled')
        return 'settled'

    def _transfer_once(self, bridge_request, source, dest):
        existing = self._reconcile(bridge_request, dest)
        if existing:
            return existing

        prepared = self.chain.prepare_transfer(
            source, dest, bridge_request.dest_amount, bridge_request.memo
        )
        # Nothing may be sent once another run could be working this request
        self._hold_lease()
        if not bridge_request.record_attempt(prepared.signature, prepared.last_valid_block_height):
            db.session.rollback()
            raise BatchFatalError(
                f'Bridge request {bridge_request.id} was claimed by another run, '
                f'transfer {prepared.signature} not sent'
            )
        self._commit()

        self.logger.info(
            f'Submitting transfer for bridge request {bridge_request.id}: '
            f'signature={prepared.signature} attempt={bridge_request.attempts}'
        )
        return self.chain.submit_transfer(prepared)

    def _reconcile(self, bridge_request, dest):
        """
        Return the signature of an earlier transfer for this request that
        already landed, or None when it is safe to submit a new one.
        """
        signature = bridge_request.attempt_signature
        if not signature:
            return None

        status = self.chain.get_transfer_status(signature)
        if status == TRANSFER_CONFIRMED:
            self.logger.info(f'Bridge request {bridge_request.id} already transferred in {signature}')
            return signature

        found = self.chain.find_transfer(dest, bridge_request.memo)
        if found:
            self.logger.info(f'Bridge request {bridge_request.id} found in chain history: {found}')
            return found

        if status != TRANSFER_FAILED:
            height = self.chain.get_block_height()
            if height <= bridge_request.attempt_last_valid_height:
                raise SettlementInFlight(
                    f'Transfer {signature} valid until block {bridge_request.attempt_last_valid_height}, '
                    f'chain at {height}'
                )

        self.logger.warning(
            f'Previous transfer {signature} for bridge request {bridge_request.id} '
            f'did not land ({status or "expired"}), resubmitting'
        )
        bridge_request.clear_attempt()
        self._commit()
        return None

    def _with_retries(self, description, func, *args):
        last_error = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                return func(*args)
            except TransientChainError as e:
                last_error = e
                if attempt == self.max_attempts:
                    break
                delay = min(self.retry_delay * 2 ** (attempt - 1), self.max_retry_delay)
                self.logger.warning(
                    f'{description} failed (attempt {attempt}/{self.max_attempts}), '
                    f'retrying in {delay:.1f}s: {e}'
                )
                self.sleep(delay)

        raise RetriesExhausted(
            f'{description} failed after {self.max_attempts} attempts: {last_error}'
        ) from last_error

    def _hold_lease(self):
        try:
            renewed = RunLease.renew(self.route.name, self.holder, self.lease_seconds)
        except SQLAlchemyError as e:
            db.session.rollback()
            raise BatchFatalError(f'Could not renew lease for {self.route.name}: {e}') from e
        if not renewed:
            raise BatchFatalError(f'Lease for {self.route.name} was lost mid-batch')

    def _fail(self, bridge_request, reason):
        db.session.rollback()
        try:
            bridge_request.mark_failed(reason)
            self._commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            raise BatchFatalError(f'Could not mark bridge request {bridge_request.id} failed: {e}') from e
        self._log_outcome(bridge_request, 'failed', reason=reason)

    def _commit(self):
        try:
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            raise

    def _release_lease(self):
        try:
            RunLease.release(self.route.name, self.holder)
        except SQLAlchemyError as e:
            db.session.rollback()
            self.logger.error(f'Could not release lease for {self.route.name}: {e}')

    def _log_outcome(self, bridge_request, outcome, reason=None):
        message = (
            f'Bridge request {bridge_request.id} {outcome}: route={self.route.name} '
            f'dest={bridge_request.dest_address} amount={bridge_request.dest_amount} '
            f'attempts={bridge_request.attempts}'
        )
        extra = {
            'bridge_route': self.route.name,
            'bridge_request_id': bridge_request.id,
            'bridge_outcome': outcome,
        }
        if outcome == 'settled':
            self.logger.info(f'{message} tx={bridge_request.dest_tx_hash}', extra=extra)
        elif outcome == 'failed':
            self.logger.error(f'{message} reason={reason}', extra=extra)
        else:
            self.logger.warning(f'{message} reason={reason}', extra=extra)
