"""
Base Schemas
============

Common schema patterns shared by the job state and the manifest.
"""

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class BaseSchema(BaseModel):
    """
    Base Pydantic schema with common configuration.

    All schemas should inherit from this base.
    """

    model_config = ConfigDict(
        # Allow ORM mode for SQLAlchemy models
        from_attributes=True,
        # Validate default values
        validate_default=True,
        # Use enum values instead of names
        use_enum_values=True,
    )


class FhirSchema(BaseSchema):
    """
    Schema serialized with FHIR style camelCase keys.

    Python code uses the snake_case attribute names; dump with
    ``by_alias=True`` to get the wire format.
    """

    model_config = ConfigDict(
        from_attributes=True,
        validate_default=True,
        use_enum_values=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )
