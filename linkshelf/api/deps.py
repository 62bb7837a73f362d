from fastapi import Depends, Request

from linkshelf.services.links import LinkService
from linkshelf.services.runtime import Runtime


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def get_link_service(runtime: Runtime = Depends(get_runtime)) -> LinkService:
    return runtime.service
