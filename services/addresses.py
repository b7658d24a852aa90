from __future__ import annotations

from models.address_model import Address
from models.extensions import db
from services.errors import NotFoundError
from services.input_validation import validate_address_payload


def serialize_address(address: Address) -> dict:
    payload = address.to_payload()
    payload["id"] = address.id
    payload["isPrimary"] = bool(address.is_primary)
    return payload


class AddressBook:
    def list(self, user_id: int) -> list[Address]:
        return (
            Address.query.filter_by(user_id=user_id)
            .order_by(Address.is_primary.desc(), Address.created_at.desc())
            .all()
        )

    def get(self, user_id: int, address_id: int) -> Address:
        address = Address.query.filter_by(id=address_id, user_id=user_id).first()
        if address is None:
            raise NotFoundError("Endereco nao encontrado.", code="address_not_found")
        return address

    def create(self, user_id: int, payload: dict) -> Address:
        data = validate_address_payload(payload)
        make_primary = bool((payload or {}).get("isPrimary", True))
        if make_primary:
            self._clear_primary(user_id)
        elif not Address.query.filter_by(user_id=user_id).first():
            # o primeiro endereco sempre vira o principal
            make_primary = True
        address = Address(user_id=user_id, is_primary=make_primary, **data)
        db.session.add(address)
        db.session.commit()
        return address

    def set_primary(self, user_id: int, address_id: int) -> Address:
        address = self.get(user_id, address_id)
        self._clear_primary(user_id)
        address.is_primary = True
        db.session.commit()
        return address

    def delete(self, user_id: int, address_id: int) -> None:
        address = self.get(user_id, address_id)
        db.session.delete(address)
        db.session.commit()

    def _clear_primary(self, user_id: int) -> None:
        Address.query.filter_by(user_id=user_id, is_primary=True).update({"is_primary": False})
