from fastapi import HTTPException, Request

from till.core.errors import TillError


def get_till(request: Request):
    # Una caja por proceso, creada en create_app
    return request.app.state.till


def http_error(exc: TillError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail={"code": exc.code, "message": exc.message})
