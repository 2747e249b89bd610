"""
Group-based authorization for signed-in users.

Entra ID emits a ``groups`` claim when the app registration is configured
for it. Users in too many groups get an overage marker instead of the list
(``_claim_names.groups``, or ``hasgroups: true`` for implicit-flow tokens).
"""

import logging
from typing import Any, Dict, Optional

from ..errors import GroupClaimMissing, GroupOverage

logger = logging.getLogger("webhook_gateway.auth.authorization")


def has_group_overage(claims: Dict[str, Any]) -> bool:
    claim_names = claims.get("_claim_names")
    if isinstance(claim_names, dict) and "groups" in claim_names:
        return True
    return claims.get("hasgroups") is True


def evaluate_group_membership(
    claims: Dict[str, Any],
    token_set: Optional[Dict[str, Any]],
    allowed_group_id: Optional[str],
) -> bool:
    """
    Decide whether the user is a member of the allowed group.

    Args:
        claims: Verified ID token claims
        token_set: Token response the claims came from
        allowed_group_id: Object id of the allowed Entra group, or None

    Returns:
        True if the user may use the application

    Raises:
        GroupOverage: The token carries an overage marker instead of groups
        GroupClaimMissing: The token carries no group information at all
    """
    if not allowed_group_id:
        logger.warning("No ENTRA_ALLOWED_GROUP_ID configured. Allowing all authenticated users.")
        return True

    groups = claims.get("groups")
    if isinstance(groups, list):
        is_member = allowed_group_id in groups
        logger.info(
            f"Group check via token claim: {'authorized' if is_member else 'denied'}",
            extra={"sub": claims.get("sub")},
        )
        return is_member

    if has_group_overage(claims):
        logger.warning(
            "Group overage detected. Configure the Entra app to emit group claims for "
            "the specific group, or reduce the user's group count.",
            extra={"sub": claims.get("sub"), "has_access_token": bool(token_set and token_set.get("access_token"))},
        )
        raise GroupOverage()

    logger.warning(
        "No groups claim in token. Configure the Entra app registration to emit group claims.",
        extra={"sub": claims.get("sub")},
    )
    raise GroupClaimMissing()
