"""
Wallet Connect Cryptography

Key derivation, NIP-04 payload encryption and event signing for wallet
connect requests. Signing goes through an injected Signer so the private key
may live outside this process.
"""

import json
import logging
import time
from abc import ABC, abstractmethod
from typing import Optional, Tuple, Callable, Dict, Any, Union

from pynostr.event import Event
from pynostr.key import PrivateKey
from pynostr.encrypted_dm import EncryptedDirectMessage

from wallet_errors import ProtocolError, SignerUnavailable

logger = logging.getLogger(__name__)

# NIP-47 event kinds
REQUEST_KIND = 23194
RESPONSE_KIND = 23195


class Signer(ABC):
    """Anything that can sign an event id on behalf of a public key"""

    @property
    @abstractmethod
    def public_key_hex(self) -> str:
        pass

    @abstractmethod
    def try_sign(self, message: bytes) -> Optional[bytes]:
        """Return a 64 byte schnorr signature, or None when unable to sign"""
        pass


class LocalKeySigner(Signer):
    """Signs with a private key held in memory"""

    def __init__(self, private_key: PrivateKey):
        self._private_key = private_key

    @classmethod
    def from_secret(cls, secret_hex: str) -> "LocalKeySigner":
        try:
            return cls(PrivateKey.from_hex(secret_hex))
        except (ValueError, TypeError) as e:
            raise ProtocolError(f"Invalid signing key: {e}") from e

    @classmethod
    def generate(cls) -> "LocalKeySigner":
        """Signer with a fresh ephemeral key"""
        return cls(PrivateKey())

    @property
    def public_key_hex(self) -> str:
        return self._private_key.public_key.hex()

    def try_sign(self, message: bytes) -> Optional[bytes]:
        signature = self._private_key.sign(message)
        if isinstance(signature, str):
            return bytes.fromhex(signature)
        return signature


class CallbackSigner(Signer):
    """Delegates signing to an external identity signer.

    The callback receives the 32 byte event id and returns the signature as
    bytes or hex, or None when the user declines or the signer is gone.
    """

    def __init__(self, public_key_hex: str, sign_callback: Callable[[bytes], Union[bytes, str, None]]):
        self._public_key_hex = public_key_hex.lower()
        self._sign_callback = sign_callback

    @property
    def public_key_hex(self) -> str:
        return self._public_key_hex

    def try_sign(self, message: bytes) -> Optional[bytes]:
        try:
            signature = self._sign_callback(message)
        except Exception as e:
            logger.warning(f"External signer failed: {e}")
            return None

        if signature is None:
            return None
        if isinstance(signature, str):
            try:
                return bytes.fromhex(signature)
            except ValueError:
                logger.warning("External signer returned a non-hex signature")
                return None
        return bytes(signature)


class CryptoEngine:
    """NIP-04 encryption and NIP-01 event signing for wallet requests"""

    def __init__(self, verify_signatures: bool = True):
        self.verify_signatures = verify_signatures

    def derive_key_pair(self, secret: str) -> Tuple[str, str]:
        """Return ``(private_key_hex, public_key_hex)`` for a 32 byte secret"""
        try:
            private_key = PrivateKey.from_hex(secret)
        except (ValueError, TypeError) as e:
            raise ProtocolError(f"Invalid secret key: {e}") from e
        return private_key.hex(), private_key.public_key.hex()

    def encrypt(self, secret: str, counterparty_pubkey: str, plaintext: str) -> str:
        """Encrypt ``plaintext`` for ``counterparty_pubkey``, giving ``base64?iv=base64``"""
        dm = EncryptedDirectMessage()
        try:
            dm.encrypt(
                private_key_hex=secret,
                cleartext_content=plaintext,
                recipient_pubkey=counterparty_pubkey,
            )
        except Exception as e:
            raise ProtocolError(f"Encryption failed: {e}") from e
        return dm.encrypted_message

    def decrypt(self, secret: str, counterparty_pubkey: str, ciphertext: str) -> str:
        """Inverse of encrypt; any malformed input is a ProtocolError"""
        if not isinstance(ciphertext, str) or "?iv=" not in ciphertext:
            raise ProtocolError("Encrypted content is missing its iv")

        dm = EncryptedDirectMessage()
        try:
            dm.decrypt(
                private_key_hex=secret,
                encrypted_message=ciphertext,
                public_key_hex=counterparty_pubkey,
            )
        except Exception as e:
            raise ProtocolError(f"Decryption failed: {e}") from e
        return dm.cleartext_content

    def sign_envelope(self, event: Event, signer: Signer) -> Event:
        """Set the author, compute the event id and attach the signature"""
        event.pubkey = signer.public_key_hex
        event.compute_id()

        signature = signer.try_sign(bytes.fromhex(event.id))
        if signature is None:
            raise SignerUnavailable("Signer is unavailable or declined to sign")
        if len(signature) != 64:
            raise SignerUnavailable(f"Signer returned a {len(signature)} byte signature")

        event.sig = signature.hex()
        return event

    def verify_event(self, event: Event) -> bool:
        """Check an incoming event signature without raising"""
        if not self.verify_signatures:
            return True
        if not event.pubkey or not event.sig:
            return False
        try:
            return bool(event.verify())
        except Exception as e:
            logger.debug(f"Signature check failed for event {event.id}: {e}")
            return False

    def build_request_event(self, secret: str, wallet_pubkey: str, payload: Dict[str, Any],
                            signer: Signer, created_at: Optional[int] = None) -> Event:
        """Encrypt a ``{method, params}`` payload into a signed request event"""
        content = self.encrypt(secret, wallet_pubkey, json.dumps(payload))
        event = Event(
            content=content,
            kind=REQUEST_KIND,
            created_at=created_at if created_at is not None else int(time.time()),
            tags=[["p", wallet_pubkey]],
        )
        return self.sign_envelope(event, signer)
