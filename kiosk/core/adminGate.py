"""
Admin Gate - PIN protection for administrative actions (configuration reset).

- PIN format: 4 to 8 ASCII digits after trimming whitespace
- Only a one-way hash is stored (adminPinHash); the raw PIN never leaves memory
- Hash schemes:
    sha256  hex digest of the digit string, unsalted; readable by earlier
            installations (default)
    bcrypt  salted bcrypt hash
  verifyPin accepts either stored format regardless of the configured scheme
- Failures do not reveal whether a PIN is configured

Property of Uncompromising Sensors LLC.
"""

import hashlib
import hmac
import re
from typing import Any, Dict

import bcrypt

from kiosk.core.configStore import ConfigStore
from kiosk.log import getLogger


PIN_PATTERN = re.compile(r'[0-9]{4,8}')
INVALID_PIN_ERROR = 'Invalid PIN. Use 4 to 8 digits.'

SCHEME_SHA256 = 'sha256'
SCHEME_BCRYPT = 'bcrypt'
HASH_SCHEMES = (SCHEME_SHA256, SCHEME_BCRYPT)

_BCRYPT_PREFIXES = ('$2a$', '$2b$', '$2y$')


def normalizePin(candidate: Any) -> str:
    """Coerce to string (None -> '') and trim"""
    return ('' if candidate is None else str(candidate)).strip()


def isValidPin(pin: str) -> bool:
    return PIN_PATTERN.fullmatch(pin) is not None


def hashPin(pin: str, scheme: str = SCHEME_SHA256) -> str:
    """One-way hash of a validated PIN"""
    if scheme == SCHEME_BCRYPT:
        return bcrypt.hashpw(pin.encode('utf-8'), bcrypt.gensalt()).decode('utf-8')
    return hashlib.sha256(pin.encode('utf-8')).hexdigest()


def checkPin(pin: str, storedHash: str) -> bool:
    """Compare a validated PIN against a stored hash of either scheme"""
    if storedHash.startswith(_BCRYPT_PREFIXES):
        try:
            return bcrypt.checkpw(pin.encode('utf-8'), storedHash.encode('utf-8'))
        except ValueError:
            return False
    return hmac.compare_digest(hashPin(pin, SCHEME_SHA256).encode('utf-8'), storedHash.encode('utf-8'))


class AdminGate:
    """PIN-based authorization gate layered on the config store."""

    def __init__(self, store: ConfigStore, scheme: str = SCHEME_SHA256):
        if scheme not in HASH_SCHEMES:
            raise ValueError(f"Unknown PIN hash scheme: {scheme}")
        self.store = store
        self.scheme = scheme
        self.log = getLogger()

    def hasPin(self) -> bool:
        doc = self.store.load()
        return bool(doc and doc.get('adminPinHash'))

    def setPin(self, candidate: Any) -> Dict[str, Any]:
        """
        Validate and store a new PIN.

        Returns {'ok': True} or {'ok': False, 'error': message}; storage is
        untouched on validation failure.
        """
        pin = normalizePin(candidate)
        if not isValidPin(pin):
            self.log.warning("[AdminGate] Rejected PIN with invalid format")
            return {'ok': False, 'error': INVALID_PIN_ERROR}

        self.store.merge({'adminPinHash': hashPin(pin, self.scheme)})
        self.log.info("[AdminGate] Admin PIN updated", scheme=self.scheme)
        return {'ok': True}

    def verifyPin(self, candidate: Any) -> bool:
        pin = normalizePin(candidate)
        if not isValidPin(pin):
            return False

        doc = self.store.load()
        storedHash = doc.get('adminPinHash') if doc else None
        if not storedHash or not isinstance(storedHash, str):
            return False

        ok = checkPin(pin, storedHash)
        if not ok:
            self.log.warning("[AdminGate] Admin PIN verification failed")
        return ok
