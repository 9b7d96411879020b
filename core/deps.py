"""
Define functions/aliases for dependency injection
"""
from typing import Annotated, TypeAlias
from fastapi import Depends, Request

from api.files.services import FileServices


def get_file_services(request: Request) -> FileServices:
  """File services built by the lifespan handler"""
  services = getattr(request.app.state, "file_services", None)
  if services is None:
    raise RuntimeError("File services are not available.")
  return services


FileServicesDep: TypeAlias = Annotated[FileServices, Depends(get_file_services)]
