from __future__ import annotations

import uuid

from recordguard.concurrency.compound import CompoundOperation, DeleteMany, DeleteOne, UpdateMany


def delete_contact_operation(contact_id: uuid.UUID, *, expected_version: int | None = None) -> CompoundOperation:
    """Deals survive with the contact unlinked; the contact's activities go with it."""
    return CompoundOperation(
        name="contact.delete",
        steps=[
            UpdateMany("deal", {"contact_id": contact_id}, {"contact_id": None}, name="unlink_deals"),
            DeleteMany("activity", {"contact_id": contact_id}, name="delete_activities"),
            DeleteOne("contact", contact_id, expected_version, name="delete_contact"),
        ],
    )


def delete_company_operation(company_id: uuid.UUID, *, expected_version: int | None = None) -> CompoundOperation:
    return CompoundOperation(
        name="company.delete",
        steps=[
            UpdateMany("contact", {"company_id": company_id}, {"company_id": None}, name="unlink_contacts"),
            UpdateMany("deal", {"company_id": company_id}, {"company_id": None}, name="unlink_deals"),
            DeleteOne("company", company_id, expected_version, name="delete_company"),
        ],
    )


def delete_deal_operation(deal_id: uuid.UUID, *, expected_version: int | None = None) -> CompoundOperation:
    return CompoundOperation(
        name="deal.delete",
        steps=[
            UpdateMany("activity", {"deal_id": deal_id}, {"deal_id": None}, name="unlink_activities"),
            DeleteOne("deal", deal_id, expected_version, name="delete_deal"),
        ],
    )


def reassign_and_delete_user_operation(
    user_id: uuid.UUID,
    successor_id: uuid.UUID,
    *,
    expected_version: int | None = None,
) -> CompoundOperation:
    return CompoundOperation(
        name="user.reassign_and_delete",
        steps=[
            UpdateMany("deal", {"owner_id": user_id}, {"owner_id": successor_id}, name="reassign_deals"),
            UpdateMany("contact", {"owner_id": user_id}, {"owner_id": successor_id}, name="reassign_contacts"),
            UpdateMany("activity", {"user_id": user_id}, {"user_id": successor_id}, name="reassign_activities"),
            DeleteOne("user", user_id, expected_version, name="delete_user"),
        ],
    )
