import logging
from typing import Dict, Iterable, Optional

from ..config import business_numbers, normalize_phone
from ..errors import ProviderUnavailable
from ..schemas.pydantic_schemas import ChannelRoleMap

logger = logging.getLogger(__name__)

CLIENT_SCHEME = "client:"


def is_client_address(value: Optional[str]) -> bool:
    return isinstance(value, str) and value.strip().lower().startswith(CLIENT_SCHEME)


def _is_business(number: str, numbers: Iterable[str]) -> bool:
    return bool(number) and number in set(numbers)


def is_agent_leg(address: Optional[str], numbers: Iterable[str]) -> bool:
    return is_client_address(address) or _is_business(normalize_phone(address), numbers)


def classify(from_number: Optional[str], to_number: Optional[str], numbers: Optional[Iterable[str]] = None) -> ChannelRoleMap:
    """Decide which recording channel carries the agent.

    Channel 1 carries the from leg and channel 2 the to leg. When neither
    side is a known business number or softphone client, the from leg is
    taken as the agent; that guess is accepted as occasionally wrong.
    """
    numbers = list(business_numbers() if numbers is None else numbers)
    if not from_number and not to_number:
        return ChannelRoleMap()
    from_agent = is_agent_leg(from_number, numbers)
    to_agent = is_agent_leg(to_number, numbers)
    if to_agent and not from_agent:
        return ChannelRoleMap.for_agent_channel(2)
    return ChannelRoleMap.for_agent_channel(1)


def split_legs(from_number: Optional[str], to_number: Optional[str], numbers: Optional[Iterable[str]] = None) -> Dict[str, str]:
    """Pick the business-side and counterparty numbers for the call record."""
    numbers = list(business_numbers() if numbers is None else numbers)
    to10 = normalize_phone(to_number)
    from10 = normalize_phone(from_number)
    to_biz = _is_business(to10, numbers)
    from_biz = _is_business(from10, numbers)

    if to_biz:
        business = to_number
    elif from_biz:
        business = from_number
    else:
        business = ""

    if to_biz and not from_biz:
        counterparty = from10
    elif from_biz and not to_biz:
        counterparty = to10
    elif is_client_address(from_number):
        counterparty = to10
    elif is_client_address(to_number):
        counterparty = from10
    else:
        counterparty = to10 or from10
    return {"business_phone": business or "", "counterparty_phone": counterparty or ""}


async def classify_call(call_id: str, provider, db=None) -> ChannelRoleMap:
    """Channel map for a call, computed once from known legs and then reused from the call record.

    When neither leg is known the default map is returned but not stored, so
    a later run with the legs filled in still classifies the call.
    """
    record = (db.get_call(call_id) or {}) if db is not None else {}
    if record.get("channel_role_map"):
        return ChannelRoleMap(**record["channel_role_map"])

    from_number, to_number = record.get("from_number"), record.get("to_number")
    if not (from_number or to_number) and provider is not None:
        try:
            call = await provider.fetch_call(call_id) or {}
            from_number, to_number = call.get("from_number"), call.get("to_number")
        except ProviderUnavailable as e:
            logger.warning(f"Could not fetch legs for {call_id}, defaulting agent to channel 1: {e}")

    role_map = classify(from_number, to_number)
    logger.info(f"Agent mapped to channel {role_map.agent_channel} for {call_id} (from={from_number}, to={to_number})")
    if db is not None and (from_number or to_number):
        db.upsert_call(call_id, {"channel_role_map": role_map.model_dump()})
    return role_map
