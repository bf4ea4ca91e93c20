"""The complete set of state machines behind assignment marking."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional

from markflow.config.settings import Settings
from markflow.core.exceptions import DefinitionError
from markflow.core.states import StateMachineDefinition
from markflow.definitions import assignments, marking, orientation, textract, transform
from markflow.definitions.assignments import build_assignments_definition
from markflow.definitions.marking import build_marking_definition
from markflow.definitions.orientation import build_orientation_definition
from markflow.definitions.textract import build_textract_definition
from markflow.definitions.transform import build_transform_definition


@dataclass(frozen=True)
class Pipeline:
    """All pipeline definitions plus the channels they expose."""

    settings: Settings
    orientation: StateMachineDefinition
    textract: StateMachineDefinition
    transform: StateMachineDefinition
    marking: StateMachineDefinition
    assignments: StateMachineDefinition
    approval_topic_arn: Optional[str] = None

    @property
    def definitions(self) -> List[StateMachineDefinition]:
        """Every machine, nested machines before the machines that start them."""
        return [self.orientation, self.textract, self.transform, self.marking, self.assignments]

    def get(self, name: str) -> StateMachineDefinition:
        """Look up a machine by deployed name or by base name."""
        for definition in self.definitions:
            if name in (definition.name, definition.name[len(self.settings.name_prefix):]):
                return definition
        raise DefinitionError(
            f"Unknown state machine: {name}",
            context={"available": [d.name for d in self.definitions]},
        )

    def catalog(self) -> Dict[str, StateMachineDefinition]:
        """ARN -> definition, for resolving nested executions."""
        bases = {
            self.orientation.name: orientation.MACHINE_NAME,
            self.textract.name: textract.MACHINE_NAME,
            self.transform.name: transform.MACHINE_NAME,
            self.marking.name: marking.MACHINE_NAME,
            self.assignments.name: assignments.MACHINE_NAME,
        }
        return {
            self.settings.state_machine_arn(bases[d.name]): d for d in self.definitions
        }


def build_pipeline(settings: Settings) -> Pipeline:
    return Pipeline(
        settings=settings,
        orientation=build_orientation_definition(settings),
        textract=build_textract_definition(settings),
        transform=build_transform_definition(settings),
        marking=build_marking_definition(settings),
        assignments=build_assignments_definition(settings),
        approval_topic_arn=settings.approval_topic_arn,
    )
