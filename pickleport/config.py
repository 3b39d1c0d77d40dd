from functools import lru_cache
from typing import Annotated

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .opcodes import DEFAULT_PROTOCOL, HIGHEST_PROTOCOL


class PickleSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="PICKLEPORT_", frozen=True)

    default_protocol: Annotated[
        int,
        Field(
            description="Protocol used by dump()/dumps() when none is given.",
            default=DEFAULT_PROTOCOL,
            ge=0,
            le=HIGHEST_PROTOCOL,
        )
    ]

    fallback_to_classdict: Annotated[
        bool,
        Field(
            description=(
                "Decode classes without a registered constructor into ClassDict\n"
                "records instead of failing with UnresolvedType."
            ),
            default=False,
        )
    ]

    enforce_opcode_versions: Annotated[
        bool,
        Field(
            description="Reject opcodes newer than the protocol announced by PROTO.",
            default=True,
        )
    ]

    string_encoding: Annotated[
        str,
        Field(
            description=(
                "Encoding for the 8-bit STRING opcodes written by Python 2.\n"
                "'bytes' keeps them as bytes objects."
            ),
            default="latin-1",
        )
    ]

    string_errors: Annotated[
        str,
        Field(description="Error handler used with string_encoding.", default="strict")
    ]

    pickle_objects: Annotated[
        bool,
        Field(
            description=(
                "Write plain instances without a registered pickler as\n"
                "class reference + __getstate__() instead of failing."
            ),
            default=False,
        )
    ]

    frame_size_target: Annotated[
        int,
        Field(description="Target frame size for protocol 4+ output.", default=64 * 1024, gt=0)
    ]

    batch_size: Annotated[
        int,
        Field(description="Items per APPENDS/SETITEMS/ADDITEMS batch.", default=1000, gt=0)
    ]


@lru_cache(maxsize=1)
def get_settings() -> PickleSettings:
    return PickleSettings()
