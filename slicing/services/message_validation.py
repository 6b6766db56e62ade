from typing import Optional
from pydantic import ValidationError

from slicing.models.enums import RequestType
from slicing.schemas.jobs import Job
from slicing.schemas.messages import REQUIRED_FIELDS, ReceivedMessage, SlicingRequest
from slicing.services.storage_service import parse_asset_url


class MalformedMessageError(ValueError):
    def __init__(self, field: str, reason: str):
        super().__init__(reason)
        self.field = field


def build_job(message: ReceivedMessage, work_dir: str, endpoint_url: Optional[str] = None) -> Job:
    """
    Validate a received message and derive the Job to slice.

    Raises:
        MalformedMessageError: a required field is missing or invalid, or an
            asset URL cannot be split into bucket and key
    """
    fields = message.fields()
    for name in REQUIRED_FIELDS:
        if fields.get(name) in (None, ""):
            raise MalformedMessageError(
                name, f"slicing request is missing the required parameter {name}"
            )

    try:
        request = SlicingRequest.model_validate(fields)
    except ValidationError as e:
        first = e.errors()[0]
        name = ".".join(str(part) for part in first["loc"])
        raise MalformedMessageError(name, f"invalid value for {name}; {first['msg']}") from e

    assets = {}
    for name, url in (("stl_file", request.stl_file),
                      ("config_file", request.config_file),
                      ("gcode_file", request.gcode_file)):
        try:
            assets[name] = parse_asset_url(url, work_dir, endpoint_url)
        except ValueError as e:
            raise MalformedMessageError(name, f"invalid data; cannot parse URL; err = {e}") from e

    return Job(
        job_id=request.job_id,
        job_oid=request.job_oid,
        handle=request.handle,
        priority=message.priority,
        request_type=request.request_type if request.request_type is not None else RequestType.STORE_ONLY,
        serial_number=request.serial_number,
        stl=assets["stl_file"],
        config=assets["config_file"],
        gcode=assets["gcode_file"],
    )
