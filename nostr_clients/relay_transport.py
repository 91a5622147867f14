"""
Relay Transport for Wallet Connect

Sends one encrypted request event through the wallet's relays and waits for
the wallet's response event. Every attempt is tracked by a PendingRequest
whose terminal state is reached exactly once and releases its subscription.
"""

import json
import time
import logging
import threading
from enum import Enum
from typing import Optional, Dict, Any, List, Callable

from pynostr.event import Event
from pynostr.filters import Filters

from nostr_clients.connection_uri import ConnectionDescriptor, abbreviate
from nostr_clients.nwc_crypto import CryptoEngine, Signer, LocalKeySigner, RESPONSE_KIND
from nostr_clients.relay_pool import RelayPool
from wallet_transports.base import Transport, TransportType, RequestEnvelope, ResponseEnvelope
from wallet_errors import (
    NWCError,
    ProtocolError,
    RelayUnavailable,
    RequestTimeout,
    SignerUnavailable,
)

logger = logging.getLogger(__name__)

# Tolerated difference between our clock and the wallet's
CLOCK_SKEW_SECONDS = 10


class RequestState(Enum):
    """Lifecycle of one in-flight request"""
    CREATED = "created"
    ENCRYPTING = "encrypting"
    SENT = "sent"
    AWAITING_RESPONSE = "awaiting_response"
    RESOLVED = "resolved"
    TIMED_OUT = "timed_out"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset({
    RequestState.RESOLVED,
    RequestState.TIMED_OUT,
    RequestState.REJECTED,
    RequestState.CANCELLED,
})


class PendingRequest:
    """A request waiting for its response.

    Exactly one of resolve, reject, cancel or expiry terminates it. Cleanup
    callbacks run once, on whichever thread terminates the request.
    """

    def __init__(self, method: str, deadline: float, correlation_id: Optional[str] = None):
        self.method = method
        self.deadline = deadline
        self.correlation_id = correlation_id
        self.state = RequestState.CREATED
        self.created_at = time.time()
        self._sent = False

        self._lock = threading.Lock()
        self._done = threading.Event()
        self._response: Optional[ResponseEnvelope] = None
        self._error: Optional[NWCError] = None
        self._cleanups: List[Callable[[], None]] = []

    @property
    def done(self) -> bool:
        return self._done.is_set()

    @property
    def was_sent(self) -> bool:
        return self._sent

    def transition(self, state: RequestState) -> bool:
        """Move to a non-terminal state, ignored once terminal"""
        with self._lock:
            if self.state in TERMINAL_STATES:
                return False
            self.state = state
            if state in (RequestState.SENT, RequestState.AWAITING_RESPONSE):
                self._sent = True
            return True

    def mark_publishing(self):
        """From here on a failure may follow delivery of the request"""
        with self._lock:
            self._sent = True

    def add_cleanup(self, cleanup: Callable[[], None]):
        with self._lock:
            if self.state not in TERMINAL_STATES:
                self._cleanups.append(cleanup)
                return
        self._run_cleanups([cleanup])

    def resolve(self, response: ResponseEnvelope) -> bool:
        return self._finish(RequestState.RESOLVED, response=response)

    def reject(self, error: NWCError) -> bool:
        return self._finish(RequestState.REJECTED, error=error)

    def cancel(self) -> bool:
        """Best-effort local cancellation, idempotent"""
        return self._finish(RequestState.CANCELLED,
                            error=RequestTimeout(f"{self.method} request was cancelled"))

    def expire(self) -> bool:
        return self._finish(RequestState.TIMED_OUT,
                            error=RequestTimeout(f"No {self.method} response before the deadline"))

    def _finish(self, state: RequestState, response: Optional[ResponseEnvelope] = None,
                error: Optional[NWCError] = None) -> bool:
        with self._lock:
            if self.state in TERMINAL_STATES:
                return False
            self.state = state
            self._response = response
            self._error = error
            cleanups, self._cleanups = self._cleanups, []

        self._done.set()
        self._run_cleanups(cleanups)
        return True

    def _run_cleanups(self, cleanups: List[Callable[[], None]]):
        for cleanup in cleanups:
            try:
                cleanup()
            except Exception as e:
                logger.warning(f"Cleanup for {self.method} request failed: {e}")

    def wait(self) -> ResponseEnvelope:
        """Block until terminal, expiring the request at its deadline"""
        remaining = self.deadline - time.monotonic()
        if not self._done.wait(max(0.0, remaining)):
            self.expire()
        return self.result()

    def result(self) -> ResponseEnvelope:
        if not self.done:
            raise RuntimeError("Request is still pending")
        if self.state == RequestState.RESOLVED:
            return self._response
        raise self._error


def _has_tag(tags: Any, name: str, value: str) -> bool:
    if not isinstance(tags, list):
        return False
    for tag in tags:
        if isinstance(tag, list) and len(tag) >= 2 and tag[0] == name and tag[1] == value:
            return True
    return False


class RelayTransport(Transport):
    """Wallet requests over Nostr relays (NIP-47)"""

    transport_type = TransportType.RELAY

    def __init__(self, pool: RelayPool, crypto: Optional[CryptoEngine] = None,
                 signer: Optional[Signer] = None):
        super().__init__()
        self.pool = pool
        self.crypto = crypto or CryptoEngine()
        self.signer = signer
        self._warned_signer_mismatch = False

    def _signer_for(self, descriptor: ConnectionDescriptor) -> Signer:
        if self.signer is None:
            return LocalKeySigner.from_secret(descriptor.secret)

        if not self._warned_signer_mismatch:
            _, client_pubkey = self.crypto.derive_key_pair(descriptor.secret)
            if client_pubkey != self.signer.public_key_hex:
                logger.warning("Signer key differs from the connection secret key; "
                               "the wallet may not be able to decrypt requests")
                self._warned_signer_mismatch = True
        return self.signer

    def _send(self, descriptor: ConnectionDescriptor, request: RequestEnvelope,
              timeout: float) -> ResponseEnvelope:
        deadline = time.monotonic() + timeout
        signer = self._signer_for(descriptor)
        relays = list(descriptor.relay_urls)

        errors: List[NWCError] = []
        timed_out = False

        for index, relay_url in enumerate(relays):
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break

            # A payment gets the whole remaining budget since it is never re-published
            budget = remaining / (len(relays) - index) if request.idempotent else remaining

            try:
                return self._attempt(descriptor, request, signer, relay_url, budget)
            except SignerUnavailable:
                raise
            except RelayUnavailable as e:
                if e.maybe_delivered and not request.idempotent:
                    raise
                logger.warning(f"Relay {relay_url} unavailable for {request.method}: {e}")
                errors.append(e)
            except RequestTimeout as e:
                if not request.idempotent:
                    raise
                logger.info(f"No {request.method} response via {relay_url} within {budget:.1f}s")
                errors.append(e)
                timed_out = True

        # A relay still connecting at the deadline counts as a timeout
        if timed_out or not errors or time.monotonic() >= deadline:
            raise RequestTimeout(f"No {request.method} response from wallet within {timeout}s")

        raise RelayUnavailable(
            f"All relays unavailable for {request.method}: {errors[-1]}",
            maybe_delivered=any(getattr(e, 'maybe_delivered', False) for e in errors),
        )

    def _attempt(self, descriptor: ConnectionDescriptor, request: RequestEnvelope,
                 signer: Signer, relay_url: str, budget: float) -> ResponseEnvelope:
        pending = PendingRequest(method=request.method, deadline=time.monotonic() + budget)

        pending.transition(RequestState.ENCRYPTING)
        created_at = int(time.time())
        event = self.crypto.build_request_event(
            descriptor.secret,
            descriptor.wallet_pubkey,
            request.to_payload(),
            signer,
            created_at=created_at,
        )
        pending.correlation_id = event.id
        sub_id = f"nwc-{event.id[:16]}"

        filters = Filters(
            kinds=[RESPONSE_KIND],
            authors=[descriptor.wallet_pubkey],
            pubkey_refs=[signer.public_key_hex],
            event_refs=[event.id],
            since=created_at - CLOCK_SKEW_SECONDS,
        ).to_dict()

        def on_event(event_dict: Dict[str, Any]):
            if pending.done:
                return
            try:
                response = self._match_response(event_dict, descriptor, event.id, request.method)
            except ProtocolError as e:
                pending.reject(e)
                return
            if response is not None:
                pending.resolve(response)

        def on_closed(reason: str):
            pending.reject(RelayUnavailable(
                f"Relay {relay_url} closed the subscription: {reason}",
                maybe_delivered=pending.was_sent,
            ))

        def on_ok(accepted: bool, reason: str):
            if not accepted:
                pending.reject(RelayUnavailable(f"Relay {relay_url} rejected the request: {reason}"))

        with self.pool.connection(relay_url, timeout=budget) as connection:
            pending.add_cleanup(lambda: connection.unsubscribe(sub_id))
            pending.add_cleanup(lambda: connection.forget_ok_handler(event.id))
            try:
                try:
                    connection.subscribe(sub_id, filters, on_event=on_event, on_closed=on_closed)
                except RelayUnavailable as e:
                    pending.reject(e)
                    raise

                # A drop reported while publish is running may follow delivery
                pending.mark_publishing()
                try:
                    connection.publish(event.to_dict(), on_ok=on_ok)
                except RelayUnavailable as e:
                    pending.reject(e)
                    return pending.result()

                pending.transition(RequestState.SENT)
                logger.debug(f"Sent {request.method} ({request.correlation_id}) as event "
                             f"{event.id[:16]} to {relay_url} for wallet {abbreviate(descriptor.wallet_pubkey)}")
                pending.transition(RequestState.AWAITING_RESPONSE)

                return pending.wait()
            finally:
                pending.cancel()

    def _match_response(self, event_dict: Dict[str, Any], descriptor: ConnectionDescriptor,
                        request_id: str, method: str) -> Optional[ResponseEnvelope]:
        """Decode the wallet's response, or return None for unrelated events"""
        if event_dict.get('kind') != RESPONSE_KIND:
            logger.debug("Discarding event of unexpected kind")
            return None
        if event_dict.get('pubkey') != descriptor.wallet_pubkey:
            logger.debug("Discarding event from unexpected author")
            return None
        if not _has_tag(event_dict.get('tags'), 'e', request_id):
            logger.debug("Discarding response to a different request")
            return None

        try:
            event = Event.from_dict(event_dict)
        except (KeyError, TypeError, ValueError):
            logger.debug("Discarding malformed event")
            return None

        if event_dict.get('id') != event.id or not self.crypto.verify_event(event):
            logger.debug(f"Discarding event with invalid id or signature from {abbreviate(event.pubkey)}")
            return None

        plaintext = self.crypto.decrypt(descriptor.secret, descriptor.wallet_pubkey, event.content)
        try:
            data = json.loads(plaintext)
        except ValueError as e:
            raise ProtocolError(f"Wallet response is not valid JSON: {e}") from e

        return ResponseEnvelope.from_wire(data, method, transport=TransportType.RELAY)

    def health_check(self, descriptor: ConnectionDescriptor) -> bool:
        """True when at least one of the wallet's relays accepts a connection"""
        for relay_url in descriptor.relay_urls:
            try:
                with self.pool.connection(relay_url):
                    return True
            except RelayUnavailable as e:
                logger.debug(f"Relay {relay_url} health check failed: {e}")
        return False

    def close(self):
        self.pool.close_all()
