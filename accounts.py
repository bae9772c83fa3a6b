"""
Registration, login and the address book.

An address book holds at most one default entry; setting a new default
clears the others and the first address added is always the default.
Edits rewrite the whole book only if it is unchanged since it was read.
"""
import logging
from typing import Callable, List, Optional

from pymongo.errors import DuplicateKeyError

from auth import create_token, hash_password, public_user, verify_password
from errors import AuthenticationError, InvalidStateError, NotFoundError, UserNotFoundError, ValidationError
from schemas import Address, User, UserRole
from stores import AccountStore

LOG = logging.getLogger("accounts")

SELF_SERVICE_ROLES = (UserRole.CUSTOMER, UserRole.SELLER)
ADDRESS_WRITE_ATTEMPTS = 3


def register(accounts: AccountStore, name: str, email: str, password: str,
             role: UserRole = UserRole.CUSTOMER, phone: Optional[str] = None) -> dict:
    email = email.lower()
    if accounts.find_by_email(email):
        raise ValidationError("User already exists")
    role = UserRole(role)
    if role not in SELF_SERVICE_ROLES:
        raise ValidationError("Invalid role")
    try:
        user = accounts.create_user(User(
            name=name.strip(), email=email, password_hash=hash_password(password), role=role, phone=phone,
        ))
    except DuplicateKeyError:
        raise ValidationError("User already exists")
    LOG.info("Registered %s as %s", email, role.value)
    return {"token": create_token(str(user["_id"])), "user": public_user(user)}


def login(accounts: AccountStore, email: str, password: str) -> dict:
    user = accounts.find_by_email(email)
    if not user or not verify_password(password, user.get("password_hash")):
        raise AuthenticationError("Invalid credentials")
    return {"token": create_token(str(user["_id"])), "user": public_user(user)}


def _load(accounts: AccountStore, user_id: str) -> dict:
    user = accounts.find_user(user_id)
    if user is None:
        raise UserNotFoundError()
    return user


def _edit_addresses(accounts: AccountStore, user_id: str, edit: Callable[[List[dict]], None]) -> List[dict]:
    """Apply `edit` to a fresh copy of the address book and write it back if nobody else did meanwhile."""
    for _ in range(ADDRESS_WRITE_ATTEMPTS):
        seen = _load(accounts, user_id).get("addresses")
        addresses = [dict(a) for a in seen or []]
        edit(addresses)
        if accounts.replace_addresses(user_id, addresses, seen):
            return addresses
        LOG.info("Address book of %s changed during edit; retrying", user_id)
    raise InvalidStateError("Address book changed concurrently; reload and retry")


def add_address(accounts: AccountStore, user_id: str, address: Address) -> List[dict]:
    entry = address.model_dump()

    def edit(addresses):
        if entry["is_default"]:
            for a in addresses:
                a["is_default"] = False
        addresses.append({**entry, "is_default": entry["is_default"] or not addresses})

    return _edit_addresses(accounts, user_id, edit)


def update_address(accounts: AccountStore, user_id: str, address_id: str, changes: dict) -> List[dict]:
    def edit(addresses):
        target = next((a for a in addresses if a.get("id") == address_id), None)
        if target is None:
            raise NotFoundError("Address not found")
        if changes.get("is_default"):
            for a in addresses:
                a["is_default"] = False
        for key, value in changes.items():
            if value is not None:
                target[key] = value

    return _edit_addresses(accounts, user_id, edit)


def delete_address(accounts: AccountStore, user_id: str, address_id: str) -> List[dict]:
    def edit(addresses):
        remaining = [a for a in addresses if a.get("id") != address_id]
        if len(remaining) == len(addresses):
            raise NotFoundError("Address not found")
        addresses[:] = remaining

    return _edit_addresses(accounts, user_id, edit)
