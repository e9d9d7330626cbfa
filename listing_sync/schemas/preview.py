from typing import List, Optional, Union

from pydantic import BaseModel, Field

from listing_sync.core.enums import ChangeType, FieldChangeType

FieldValue = Optional[Union[str, int, float]]


class FieldChange(BaseModel):
    field: str
    before: FieldValue = None
    after: FieldValue = None
    change_type: FieldChangeType = FieldChangeType.MODIFIED


class VariationChange(BaseModel):
    change_id: str
    variation_id: str
    change_type: ChangeType
    field_changes: List[FieldChange] = []


class Change(BaseModel):
    change_id: str
    change_type: ChangeType
    listing_id: int = 0
    title: str = ""
    field_changes: List[FieldChange] = []
    variation_changes: List[VariationChange] = []


class PreviewSummary(BaseModel):
    total_changes: int = 0
    creates: int = 0
    updates: int = 0
    deletes: int = 0

    @classmethod
    def from_changes(cls, changes: List[Change]) -> "PreviewSummary":
        summary = cls(total_changes=len(changes))
        for change in changes:
            if change.change_type == ChangeType.CREATE:
                summary.creates += 1
            elif change.change_type == ChangeType.UPDATE:
                summary.updates += 1
            elif change.change_type == ChangeType.DELETE:
                summary.deletes += 1
        return summary


class PreviewResult(BaseModel):
    changes: List[Change] = []
    summary: PreviewSummary = Field(default_factory=PreviewSummary)
