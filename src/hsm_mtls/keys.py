from __future__ import annotations

import logging
from contextlib import closing
from dataclasses import dataclass, field
from typing import Any, Mapping

import pkcs11
from pkcs11 import Attribute, KeyType, ObjectClass

from .exceptions import HsmOperationError, KeyNotFoundError, format_exception
from .session import HsmSession

_logger = logging.getLogger("hsm_mtls.keys")


@dataclass(frozen=True, eq=False)
class KeyHandle:
    """
    Reference to a private key object inside one HsmSession.

    The handle borrows the session; it is only usable while that session is
    authenticated.
    """

    session: HsmSession = field(repr=False)
    label: str
    key_type: KeyType
    key_id: bytes | None
    private_key: pkcs11.PrivateKey = field(repr=False)
    object_class: ObjectClass = ObjectClass.PRIVATE_KEY

    def require_live(self) -> pkcs11.PrivateKey:
        self.session.require_authenticated()
        return self.private_key


def _search_objects(
    session: HsmSession,
    template: Mapping[Attribute, Any],
    *,
    limit: int,
) -> list[pkcs11.Object]:
    found: list[pkcs11.Object] = []
    with session.lock:
        # get_objects() is a generator around the search operation. Closing it
        # runs C_FindObjectsFinal and frees the session operation lock now
        # rather than whenever the generator is collected.
        with closing(session.pkcs11_session.get_objects(dict(template))) as search:
            for obj in search:
                found.append(obj)
                if len(found) >= limit:
                    break
    return found


def _read_optional(obj: pkcs11.Object, attribute: Attribute) -> Any:
    try:
        return obj[attribute]
    except (KeyError, pkcs11.exceptions.PKCS11Error):
        return None


def find_private_key(session: HsmSession, label: str, *, strict: bool = False) -> KeyHandle:
    """
    Resolve a label to the private key object carrying it.

    Public keys or certificates with the same label never match. When
    several private keys share the label the first one enumerated is used
    and a warning is logged; pass strict=True to reject that case instead.
    """
    if not label:
        raise ValueError("label must be a non-empty string.")

    template = {
        Attribute.CLASS: ObjectClass.PRIVATE_KEY,
        Attribute.LABEL: label,
    }
    try:
        matches = _search_objects(session, template, limit=2)
    except HsmOperationError:
        raise
    except Exception as exc:
        _logger.exception("Private key search failed label=%s", label)
        raise HsmOperationError(
            f"Private key search failed for '{label}': {format_exception(exc)}"
        ) from exc

    if not matches:
        _logger.info("Private key not found label=%s", label)
        raise KeyNotFoundError(f"Private key '{label}' was not found.")
    if len(matches) > 1:
        if strict:
            raise KeyNotFoundError(
                f"Private key label '{label}' is ambiguous: more than one key matches."
            )
        _logger.warning(
            "More than one private key matches label=%s; using the first one.", label
        )

    private_key = matches[0]
    try:
        key_type = private_key[Attribute.KEY_TYPE]
    except Exception as exc:
        raise HsmOperationError(
            f"Failed to read key type of '{label}': {format_exception(exc)}"
        ) from exc
    if key_type not in (KeyType.RSA, KeyType.EC):
        raise KeyNotFoundError(
            f"Private key '{label}' has unsupported key type {key_type}."
        )

    handle = KeyHandle(
        session=session,
        label=label,
        key_type=key_type,
        key_id=_read_optional(private_key, Attribute.ID) or None,
        private_key=private_key,
    )
    _logger.debug("Loaded private key label=%s key_type=%s", label, key_type)
    return handle


def find_public_key(session: HsmSession, key_handle: KeyHandle) -> pkcs11.PublicKey | None:
    """
    Locate the public key object paired with a private key.

    Tries CKA_ID first, then the private key label, then "<label>.pub".
    """
    lookups: list[dict[Attribute, Any]] = []
    if key_handle.key_id:
        lookups.append({Attribute.ID: key_handle.key_id})
    lookups.append({Attribute.LABEL: key_handle.label})
    lookups.append({Attribute.LABEL: f"{key_handle.label}.pub"})

    for lookup in lookups:
        template = {
            Attribute.CLASS: ObjectClass.PUBLIC_KEY,
            Attribute.KEY_TYPE: key_handle.key_type,
            **lookup,
        }
        try:
            matches = _search_objects(session, template, limit=1)
        except HsmOperationError:
            raise
        except Exception as exc:
            _logger.exception("Public key search failed label=%s", key_handle.label)
            raise HsmOperationError(
                f"Public key search failed for '{key_handle.label}': {format_exception(exc)}"
            ) from exc
        if matches:
            _logger.debug(
                "Loaded public key for label=%s using %s",
                key_handle.label,
                ", ".join(attribute.name for attribute in lookup),
            )
            return matches[0]

    _logger.debug("No public key object found for label=%s", key_handle.label)
    return None
