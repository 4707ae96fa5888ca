from affiliate_exchange.bundle_schema import AffiliateRecord
from affiliate_exchange.domain import TargetAffiliateRow

DEFAULT_STATUS = "ACTIVE"
DEFAULT_CATEGORY = "TITULAR"


def to_target_row(affiliate: AffiliateRecord) -> TargetAffiliateRow:
    """Map a validated bundle record to the target store's row shape. Never raises for validated input."""
    personal = affiliate.personal
    contact = affiliate.contact
    address = affiliate.address
    employment = affiliate.employment
    plan = affiliate.plan

    return TargetAffiliateRow(
        external_id=str(affiliate.id) if affiliate.id is not None else None,
        document_id=personal.cedula,
        first_name=personal.full_name.first,
        last_name=personal.full_name.last,
        birth_date=personal.birth_date or None,
        gender=personal.gender or None,
        phone=(contact.phone or None) if contact else None,
        email=(contact.email or None) if contact else None,
        address=(address.full_address or None) if address else None,
        province=(address.province or None) if address else None,
        municipality=(address.municipality or None) if address else None,
        plan_code=plan.code,
        plan_name=plan.name,
        plan_type=plan.type or None,
        monthly_amount=plan.monthly_amount or 0.0,
        status=affiliate.status or DEFAULT_STATUS,
        category=affiliate.category or DEFAULT_CATEGORY,
        employer=(employment.employer or None) if employment else None,
        base_salary=employment.base_salary if employment else None,
    )
