"""
Association resolution for synced records.

Given a page of records of one object type and a list of object types the
data source wants associations to, attaches the associated ids to each
record's properties:

  associated_{to_type}_ids  -> list of ids (possibly empty)
  associated_{to_type}_id   -> first id, or None

Resolution chain per target type:
  1. Association schema check (cached per object-type pair)
  2. No declared association types -> skip; no keys are written
  3. Otherwise one batch lookup for the whole page
"""

from __future__ import annotations

import logging
from typing import Sequence

from connectors.base import BaseConnector
from connectors.models import ExternalRecord

logger = logging.getLogger(__name__)


def association_ids_key(to_type: str) -> str:
    return f"associated_{to_type}_ids"


def association_id_key(to_type: str) -> str:
    return f"associated_{to_type}_id"


class AssociationResolver:
    """Attaches v4 batch association ids to records.

    Build once per sync run so the schema cache lives exactly as long as
    the run.
    """

    def __init__(self, connector: BaseConnector) -> None:
        self._connector = connector
        self._schema_cache: dict[tuple[str, str], bool] = {}

    async def has_association(self, from_type: str, to_type: str) -> bool:
        """Whether the provider declares any association type for the pair."""
        key = (from_type, to_type)
        if key not in self._schema_cache:
            schema = await self._connector.get_association_schema(from_type, to_type)
            self._schema_cache[key] = bool(schema)
            if not schema:
                logger.info(
                    "No association types defined for %s -> %s; skipping association lookups",
                    from_type, to_type,
                )
        return self._schema_cache[key]

    async def attach(
        self,
        from_type: str,
        records: Sequence[ExternalRecord],
        to_types: Sequence[str],
    ) -> list[ExternalRecord]:
        """Return copies of ``records`` with association keys merged into properties."""
        resolved = [record.model_copy(deep=True) for record in records]
        if not resolved:
            return resolved

        from_ids = [record.external_id for record in resolved]
        for to_type in to_types:
            if not await self.has_association(from_type, to_type):
                continue

            associations = await self._connector.batch_fetch_associations(from_type, from_ids, to_type)
            linked = 0
            for record in resolved:
                to_ids = associations.get(record.external_id, [])
                record.properties[association_ids_key(to_type)] = to_ids
                record.properties[association_id_key(to_type)] = to_ids[0] if to_ids else None
                if to_ids:
                    linked += 1

            logger.debug(
                "Resolved %s -> %s associations: %d/%d records linked",
                from_type, to_type, linked, len(resolved),
            )
        return resolved
