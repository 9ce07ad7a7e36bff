from typing import List, Union

from booking_schemas import Caller, Group, Individual
from errors import NotFoundError
from persistence import crud


def mask_name(name: str) -> str:
    """Keep the first character, hide the rest."""
    return "".join(ch if index == 0 else "·" for index, ch in enumerate(name))


class IdentityResolver:
    """
    Resolves a booking's customer to exactly one of Individual or Group.
    Membership data belongs to an external collaborator; this reads its persisted projection.
    """

    def resolve(self, db, identity_id: str) -> Union[Individual, Group]:
        model = crud.get_identity(db, identity_id)
        if model is None:
            raise NotFoundError("Identity not found", code="identity_not_found")
        return crud.identity_to_pydantic(model)

    def holder(self, db, caller: Caller) -> Individual:
        identity = self.resolve(db, caller.user_id)
        if not isinstance(identity, Individual):
            raise NotFoundError("User not found", code="user_not_found")
        return identity

    def resolve_customer(self, db, caller: Caller, identity_id: str) -> Union[Individual, Group]:
        """The customer a caller may book for: themselves, or a group they belong to."""
        identity = self.resolve(db, identity_id)
        if isinstance(identity, Individual):
            if identity.id != caller.user_id:
                raise NotFoundError("User not found", code="user_not_found")
        elif caller.user_id not in identity.member_ids:
            raise NotFoundError("Group not found", code="group_not_found")
        return identity

    def is_member(self, db, group_id: str, user_id: str) -> bool:
        return crud.is_member_of(db, group_id, user_id)

    def members(self, identity: Union[Individual, Group]) -> List[str]:
        if isinstance(identity, Group):
            return list(identity.member_ids)
        return [identity.id]

    def display_name(self, name: str, caller: Caller, holder_id: str) -> str:
        if caller.is_staff or caller.user_id == holder_id:
            return name
        return mask_name(name)
