import json
from contextlib import contextmanager

import httpx
from solana.exceptions import SolanaRpcException
from solana.rpc.api import Client
from solana.rpc.commitment import Confirmed
from solana.rpc.core import (
    RPCException,
    TransactionExpiredBlockheightExceededError,
    UnconfirmedTxError,
)
from solana.rpc.types import TxOpts
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import VersionedTransaction
from solders.transaction_status import TransactionConfirmationStatus
from spl.memo.constants import MEMO_PROGRAM_ID
from spl.memo.instructions import MemoParams, create_memo
from spl.token.constants import TOKEN_PROGRAM_ID
from spl.token.instructions import (
    TransferParams,
    create_idempotent_associated_token_account,
    get_associated_token_address,
    transfer,
)

from exceptions import BatchFatalError, PermanentRequestError, TransientChainError

TRANSFER_CONFIRMED = 'confirmed'
TRANSFER_FAILED = 'failed'

# RPCException messages that describe a node or network condition rather than the request
TRANSIENT_RPC_MARKERS = (
    'blockhash not found',
    'node is behind',
    'node is unhealthy',
    'too many requests',
    '429',
    'timed out',
    'rate limit',
    'try again',
)

HISTORY_LOOKUP_LIMIT = 1000


def load_keypair(secret_key):
    """
    Accept the authority key as the JSON byte array solana-keygen writes
    or as a base58 string.
    """
    if not secret_key:
        raise BatchFatalError('Settlement authority key is not configured')
    try:
        if isinstance(secret_key, (list, tuple)):
            return Keypair.from_bytes(bytes(secret_key))
        secret_key = secret_key.strip()
        if secret_key.startswith('['):
            return Keypair.from_bytes(bytes(json.loads(secret_key)))
        return Keypair.from_base58_string(secret_key)
    except Exception as e:
        raise BatchFatalError(f'Settlement authority key is unusable: {e}') from e


def parse_pubkey(address, what='address'):
    try:
        return Pubkey.from_string(str(address).strip())
    except Exception as e:
        raise PermanentRequestError(f'Invalid {what} {address!r}: {e}') from e


def is_transient_rpc_error(error):
    message = str(error).lower()
    return any(marker in message for marker in TRANSIENT_RPC_MARKERS)


@contextmanager
def translate_errors(action):
    """
    Map solana-py / httpx failures onto the bridge error taxonomy.
    """
    try:
        yield
    except (TransientChainError, PermanentRequestError, BatchFatalError):
        raise
    except (SolanaRpcException, httpx.TransportError, httpx.TimeoutException) as e:
        raise TransientChainError(f'{action}: {e}') from e
    except (UnconfirmedTxError, TransactionExpiredBlockheightExceededError) as e:
        raise TransientChainError(f'{action}: {e}') from e
    except RPCException as e:
        if is_transient_rpc_error(e):
            raise TransientChainError(f'{action}: {e}') from e
        raise PermanentRequestError(f'{action}: {e}') from e


class PreparedTransfer:
    """A signed transfer that has not been sent yet."""

    def __init__(self, transaction, last_valid_block_height):
        self.transaction = transaction
        self.signature = str(transaction.signatures[0])
        self.last_valid_block_height = last_valid_block_height


class SolanaBridgeClient:
    def __init__(self, rpc_url, authority, mint, commitment=Confirmed):
        self.rpc_url = rpc_url
        self.authority = authority
        self.mint = mint
        self.commitment = commitment
        self.client = Client(rpc_url, commitment=commitment)

    @classmethod
    def from_route(cls, route):
        authority = load_keypair(route.secret_key)
        if not route.token_id:
            raise BatchFatalError(f'No token id configured for route {route.name}')
        try:
            mint = Pubkey.from_string(route.token_id)
        except Exception as e:
            raise BatchFatalError(f'Invalid token id for route {route.name}: {e}') from e
        return cls(route.rpc_url, authority, mint)

    def authority_token_account(self):
        return self._get_or_create(self.authority.pubkey())

    def get_or_create_token_account(self, owner_address):
        return self._get_or_create(parse_pubkey(owner_address, 'destination address'))

    def _get_or_create(self, owner):
        token_account = get_associated_token_address(owner, self.mint)

        with translate_errors(f'Token account lookup for {owner}'):
            info = self.client.get_account_info(token_account, commitment=self.commitment)
            if info.value is not None:
                return token_account

            instruction = create_idempotent_associated_token_account(
                self.authority.pubkey(), owner, self.mint
            )
            self._send_and_confirm([instruction])

        return token_account

    def prepare_transfer(self, source, dest, amount, memo):
        instructions = [
            transfer(
                TransferParams(
                    program_id=TOKEN_PROGRAM_ID,
                    source=source,
                    dest=dest,
                    owner=self.authority.pubkey(),
                    amount=int(amount),
                )
            ),
            create_memo(
                MemoParams(
                    program_id=MEMO_PROGRAM_ID,
                    signer=self.authority.pubkey(),
                    message=memo.encode('utf-8'),
                )
            ),
        ]
        with translate_errors('Fetching latest blockhash'):
            latest = self.client.get_latest_blockhash(self.commitment).value

        return PreparedTransfer(
            self._sign(instructions, latest.blockhash),
            latest.last_valid_block_height,
        )

    def submit_transfer(self, prepared):
        with translate_errors(f'Transfer {prepared.signature}'):
            self._send(prepared.transaction, prepared.last_valid_block_height)
        return prepared.signature

    def get_transfer_status(self, signature):
        with translate_errors(f'Status lookup for {signature}'):
            resp = self.client.get_signature_statuses(
                [Signature.from_string(signature)], search_transaction_history=True
            )
        status = resp.value[0]
        if status is None:
            return None
        if status.err is not None:
            return TRANSFER_FAILED
        if status.confirmation_status in (
            TransactionConfirmationStatus.Confirmed,
            TransactionConfirmationStatus.Finalized,
        ):
            return TRANSFER_CONFIRMED
        return None

    def find_transfer(self, token_account, memo):
        """
        Look through recent history of the token account for a successful
        transaction carrying the memo.
        """
        with translate_errors(f'History lookup for {token_account}'):
            resp = self.client.get_signatures_for_address(
                token_account, limit=HISTORY_LOOKUP_LIMIT, commitment=self.commitment
            )
        for entry in resp.value:
            if entry.err is None and entry.memo and memo in entry.memo:
                return str(entry.signature)
        return None

    def get_block_height(self):
        with translate_errors('Block height lookup'):
            return self.client.get_block_height(self.commitment).value

    def _sign(self, instructions, blockhash):
        message = MessageV0.try_compile(
            payer=self.authority.pubkey(),
            instructions=instructions,
            address_lookup_table_accounts=[],
            recent_blockhash=blockhash,
        )
        return VersionedTransaction(message, [self.authority])

    def _send_and_confirm(self, instructions):
        latest = self.client.get_latest_blockhash(self.commitment).value
        tx = self._sign(instructions, latest.blockhash)
        return self._send(tx, latest.last_valid_block_height)

    def _send(self, tx, last_valid_block_height):
        resp = self.client.send_transaction(
            tx, opts=TxOpts(skip_confirmation=True, preflight_commitment=self.commitment)
        )
        confirmation = self.client.confirm_transaction(
            resp.value, self.commitment, last_valid_block_height=last_valid_block_height
        )
        status = confirmation.value[0]
        if status is not None and status.err is not None:
            raise PermanentRequestError(f'Transaction {resp.value} failed on chain: {status.err}')
        return str(resp.value)
