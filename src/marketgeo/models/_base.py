"""Base model shared by marketgeo data models.

Every model is frozen: a change to an entity or a view always produces a
new value that replaces the old one.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict


class MarketBaseModel(BaseModel):
    """Base for marketgeo models.

    * frozen, so snapshots handed to consumers cannot be mutated
    * ``populate_by_name`` so both row column names and field names work
    * unknown row columns are ignored
    """

    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        populate_by_name=True,
    )
