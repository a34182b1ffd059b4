from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Domain models speak snake_case in Python and camelCase on the wire."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)
