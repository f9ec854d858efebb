"""Release secuencial de tickets

Grupos "sequential": solo se vende el primer ticket activo (por sort_order)
que no esté agotado. Cuando se agota, se libera el siguiente. Estado calculado,
sin jobs en background.
"""
from typing import Dict, List, Optional

from services.checkout.models.domain import ReleaseSettings, TicketTypeRecord

UNGROUPED_KEY = "__ungrouped__"


def _group_of(ticket_type_id: str, group_map: Dict[str, Optional[str]]) -> str:
    return group_map.get(ticket_type_id) or UNGROUPED_KEY


def validate_sequential_purchase(
    ticket_type: TicketTypeRecord,
    all_ticket_types: List[TicketTypeRecord],
    release: Optional[ReleaseSettings],
) -> Optional[str]:
    """Mensaje de error si el ticket todavía no está liberado, None si se puede comprar"""
    if release is None:
        return None

    group_name = _group_of(ticket_type.id, release.group_map)
    if release.release_mode.get(group_name) != "sequential":
        return None

    group_tickets = sorted(
        (
            tt for tt in all_ticket_types
            if _group_of(tt.id, release.group_map) == group_name and tt.status == "active"
        ),
        key=lambda tt: tt.sort_order,
    )

    for tt in group_tickets:
        if tt.id == ticket_type.id:
            break
        if not tt.is_sold_out:
            return f'"{ticket_type.name}" is not yet available. "{tt.name}" must sell out first.'

    return None
