"""Controlled vocabulary of signature meanings, keyed by scope."""

from pathlib import Path
from typing import Dict, List, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator


class MeaningVocabulary(BaseModel):
    """Versioned mapping of signature scope to its permitted meanings.

    The vocabulary is handed to the signature service at construction; the
    version is stored on every signature made under it.
    """

    model_config = ConfigDict(frozen=True)

    version: str = Field(..., description="Version of the vocabulary document")
    scopes: Dict[str, List[str]] = Field(..., description="Scope to meanings")

    @field_validator("scopes")
    @classmethod
    def validate_scopes(cls, v: Dict[str, List[str]]) -> Dict[str, List[str]]:
        for scope, meanings in v.items():
            if not meanings:
                raise ValueError(f"Scope {scope} must define at least one meaning")
            if len(set(meanings)) != len(meanings):
                raise ValueError(f"Scope {scope} lists a meaning twice")
        return v

    def list_scopes(self) -> List[str]:
        return sorted(self.scopes)

    def has_scope(self, scope: str) -> bool:
        return scope in self.scopes

    def list_meanings(self, scope: str) -> List[str]:
        """Meanings for ``scope``; KeyError when the scope is unknown."""
        return list(self.scopes[scope])

    def is_valid(self, scope: str, meaning: str) -> bool:
        return meaning in self.scopes.get(scope, [])

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "MeaningVocabulary":
        """Load a vocabulary document.

        Expected layout::

            version: "2024.1"
            scopes:
              QC_APPROVAL:
                - QC review and approval
        """
        with open(path, "r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh) or {}
        return cls.model_validate(data)


DEFAULT_VOCABULARY = MeaningVocabulary(
    version="1.0",
    scopes={
        "BATCH_RELEASE": [
            "I confirm that this batch meets all release criteria",
            "I have reviewed and approve the batch for release",
            "Quality release approval",
            "Reviewed and verified batch record execution",
            "Approved for release",
            "Rejected: batch record does not meet release criteria",
        ],
        "QC_APPROVAL": [
            "I confirm all QC tests have been completed and meet specifications",
            "QC review and approval",
            "Test results verified and approved",
            "I approve this CAPA for implementation",
            "I confirm the closure of this OOS case as CONFIRMED",
            "I confirm the closure of this OOS case as INVALIDATED",
            "I confirm the closure of this OOS case as INCONCLUSIVE",
            "Verified step execution",
        ],
        "DEVIATION_APPROVAL": [
            "I have investigated and approve the deviation closure",
            "Deviation reviewed and closed",
            "CAPA actions verified complete",
            "Approved deviation CAPA",
        ],
        "MASTERDATA_CHANGE": [
            "I approve this master data change",
            "Change reviewed and authorized",
            "Specification change approved",
        ],
        "RECIPE_ACTIVATION": [
            "I approve this recipe for production use",
            "Recipe reviewed and activated",
            "Manufacturing formula authorized",
        ],
        "PO_APPROVAL": [
            "I approve this purchase order",
            "Procurement approved",
        ],
        "FINANCIAL_APPROVAL": [
            "I authorize this financial transaction",
            "Financial approval granted",
            "Payment/invoice approved",
        ],
        "DISPENSING_APPROVAL": [
            "I confirm the dispensing is accurate and complete",
            "Dose verification and approval",
            "Patient dose released",
        ],
    },
)
