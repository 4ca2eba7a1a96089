"""
PKCS#11 module and session lifecycle.

Acquisition order is module -> slot -> RW session -> user login. Teardown
runs in reverse: logout and session close, then module release. Teardown
never raises; failures are logged so they cannot mask the primary error.
"""

from __future__ import annotations

import atexit
import logging
import threading
from enum import Enum
from pathlib import Path
from typing import Any

import pkcs11

from .config import HsmConfig
from .exceptions import (
    AuthenticationError,
    HsmOperationError,
    ModuleLoadError,
    NoUsableSlotError,
    SessionClosedError,
    SessionOpenError,
    TokenNotFoundError,
    format_exception,
)

_logger = logging.getLogger("hsm_mtls.session")

_AUTHENTICATION_FAILURES = (
    pkcs11.exceptions.PinIncorrect,
    pkcs11.exceptions.PinInvalid,
    pkcs11.exceptions.PinLenRange,
    pkcs11.exceptions.PinLocked,
    pkcs11.exceptions.PinExpired,
)


class SessionState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"
    CLOSED = "closed"


class HsmModule:
    """
    A loaded PKCS#11 module, shared by every session in the process.

    Use acquire()/release() rather than the constructor. The module is
    finalized when its last reference is released, or at interpreter exit.
    """

    _registry: dict[str, "HsmModule"] = {}
    _registry_lock = threading.Lock()

    def __init__(self, module_path: str, lib: Any) -> None:
        self.module_path = module_path
        self._lib = lib
        self._refcount = 0

    @property
    def lib(self) -> Any:
        if self._lib is None:
            raise SessionClosedError(f"PKCS#11 module {self.module_path} is finalized.")
        return self._lib

    @property
    def refcount(self) -> int:
        return self._refcount

    @classmethod
    def acquire(cls, module_path: str) -> "HsmModule":
        key = str(Path(module_path).expanduser())
        with cls._registry_lock:
            module = cls._registry.get(key)
            if module is None:
                if not Path(key).exists():
                    raise ModuleLoadError(f"PKCS#11 module path does not exist: {key}")
                try:
                    lib = pkcs11.lib(key)
                except Exception as exc:
                    _logger.exception("Failed to load PKCS#11 module path=%s", key)
                    raise ModuleLoadError(
                        f"Failed to load PKCS#11 module {key}: {format_exception(exc)}"
                    ) from exc
                module = cls(key, lib)
                cls._registry[key] = module
                _logger.info("Loaded PKCS#11 module path=%s", key)
            module._refcount += 1
            return module

    def release(self) -> None:
        with self._registry_lock:
            if self._refcount == 0:
                return
            self._refcount -= 1
            if self._refcount > 0:
                return
            if self._registry.get(self.module_path) is self:
                del self._registry[self.module_path]
            self._finalize()

    def _finalize(self) -> None:
        lib, self._lib = self._lib, None
        if lib is None:
            return
        try:
            # pkcs11.lib() caches loaded libraries by path. Unloading through
            # the package drops that entry so the next acquire() gets a fresh
            # function list instead of the unloaded one.
            pkcs11.unload(self.module_path)
            _logger.info("Finalized PKCS#11 module path=%s", self.module_path)
        except Exception as exc:
            _logger.warning(
                "PKCS#11 module finalize failed path=%s: %s",
                self.module_path,
                format_exception(exc),
            )

    @classmethod
    def finalize_all(cls) -> None:
        with cls._registry_lock:
            modules = list(cls._registry.values())
            cls._registry.clear()
        for module in modules:
            module._refcount = 0
            module._finalize()


atexit.register(HsmModule.finalize_all)


class HsmSession:
    """
    One authenticated RW session on one token.

    The session owns a re-entrant lock; object searches and signatures must
    run while holding it, since tokens do not guarantee concurrent operations
    on a single session are safe.
    """

    def __init__(self, config: HsmConfig) -> None:
        self._config = config
        self._module: HsmModule | None = None
        self._session: pkcs11.Session | None = None
        self._token_label: str | None = None
        self._slot_id: int | None = None
        self._state = SessionState.UNAUTHENTICATED
        self.lock = threading.RLock()

    def __enter__(self) -> "HsmSession":
        self.open()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_authenticated(self) -> bool:
        return self._state is SessionState.AUTHENTICATED

    @property
    def token_label(self) -> str | None:
        return self._token_label

    @property
    def slot_id(self) -> int | None:
        return self._slot_id

    @property
    def pkcs11_session(self) -> pkcs11.Session:
        self.require_authenticated()
        if self._session is None:
            raise HsmOperationError("HSM session has no open PKCS#11 session.")
        return self._session

    def require_authenticated(self) -> None:
        if self._state is SessionState.CLOSED:
            raise SessionClosedError("HSM session is closed.")
        if self._state is not SessionState.AUTHENTICATED:
            raise HsmOperationError("HSM session is not authenticated.")

    def open(self) -> None:
        if self._state is SessionState.AUTHENTICATED:
            _logger.debug("HSM session already open.")
            return
        if self._state is SessionState.CLOSED:
            raise SessionClosedError("A closed HSM session cannot be reopened.")

        try:
            self._module = HsmModule.acquire(self._config.module_path)
            slot = self.select_slot()
            self.open_rw_session_and_login(slot)
        except BaseException:
            self.close()
            raise

    def select_slot(self) -> pkcs11.Slot:
        """
        Pick the slot to use among slots with a token present.

        Without a configured token label or slot number the first slot in
        enumeration order wins. A configured label must match exactly.
        """
        if self._module is None:
            raise HsmOperationError("PKCS#11 module is not loaded.")
        try:
            slots = list(self._module.lib.get_slots(token_present=True))
        except Exception as exc:
            _logger.exception("Slot enumeration failed.")
            raise NoUsableSlotError(
                f"Failed to enumerate slots: {format_exception(exc)}"
            ) from exc

        if not slots:
            raise NoUsableSlotError("No slot with a token present was found.")

        wanted_label = self._config.token_label
        wanted_slot = self._config.slot_no
        for slot in slots:
            if wanted_slot is not None and slot.slot_id != wanted_slot:
                continue
            try:
                token = slot.get_token()
            except pkcs11.exceptions.PKCS11Error as exc:
                _logger.debug(
                    "Skipping slot=%s without readable token: %s",
                    slot.slot_id,
                    format_exception(exc),
                )
                continue
            if wanted_label is not None and token.label != wanted_label:
                continue
            self._slot_id = slot.slot_id
            self._token_label = token.label
            _logger.info("Selected slot=%s token_label=%s", slot.slot_id, token.label)
            return slot

        if wanted_label is not None:
            raise TokenNotFoundError(f"No token with label '{wanted_label}' is present.")
        if wanted_slot is not None:
            raise TokenNotFoundError(f"No token is present in slot {wanted_slot}.")
        raise NoUsableSlotError("No slot with a readable token was found.")

    def open_rw_session_and_login(self, slot: pkcs11.Slot) -> None:
        """Open a RW session on slot and log in as CKU_USER with the configured PIN."""
        if self._state is not SessionState.UNAUTHENTICATED or self._session is not None:
            raise HsmOperationError("HSM session is already open or closed.")
        token = slot.get_token()
        pin = self._config.user_pin()
        try:
            # python-pkcs11 opens the session and logs in as CKU_USER in one call.
            session = token.open(rw=True, user_pin=pin)
        except pkcs11.exceptions.UserAlreadyLoggedIn:
            _logger.info("Token already has a logged-in user; reusing login state.")
            try:
                session = token.open(rw=True)
            except Exception as exc:
                _logger.exception("Failed to open HSM session.")
                raise SessionOpenError(
                    f"Failed to open HSM session: {format_exception(exc)}"
                ) from exc
        except _AUTHENTICATION_FAILURES as exc:
            _logger.error(
                "HSM login rejected token_label=%s reason=%s",
                self._token_label,
                type(exc).__name__,
            )
            # Token.open() does not close the handle when C_Login fails. The
            # handle goes away with C_Finalize, which only runs once no other
            # session shares this module.
            if self._module is not None and self._module.refcount > 1:
                _logger.warning(
                    "Failed login left a session handle open on token_label=%s "
                    "until PKCS#11 module %s is finalized.",
                    self._token_label,
                    self._module.module_path,
                )
            raise AuthenticationError(
                f"Login rejected by token '{self._token_label}': {type(exc).__name__}"
            ) from exc
        except Exception as exc:
            _logger.exception("Failed to open HSM session.")
            raise SessionOpenError(
                f"Failed to open HSM session: {format_exception(exc)}"
            ) from exc
        finally:
            del pin

        self._session = session
        self._state = SessionState.AUTHENTICATED
        _logger.info("HSM session opened and authenticated token_label=%s", self._token_label)

    def close(self) -> None:
        if self._state is SessionState.CLOSED:
            _logger.debug("HSM session already closed.")
            return

        with self.lock:
            session, self._session = self._session, None
            self._state = SessionState.CLOSED
            if session is not None:
                try:
                    # Session.close() logs out first when a user is logged in.
                    session.close()
                    _logger.info("HSM session logged out and closed.")
                except Exception as exc:
                    _logger.warning("HSM session close failed: %s", format_exception(exc))

            module, self._module = self._module, None
            if module is not None:
                module.release()
