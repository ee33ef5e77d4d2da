from typing import NoReturn

from fastapi import HTTPException


def abort(status_code: int, code: str, message: str, **extra) -> NoReturn:
    raise HTTPException(status_code=status_code, detail={"code": code, "message": message, **extra})


def _auth_401(code: str, message: str) -> HTTPException:
    # ✅ 带上 WWW-Authenticate
    return HTTPException(
        status_code=401,
        detail={"code": code, "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def _forbidden_403(message: str, **extra) -> HTTPException:
    return HTTPException(status_code=403, detail={"code": "FORBIDDEN", "message": message, **extra})


def not_found(what: str) -> NoReturn:
    abort(404, "NOT_FOUND", f"{what} not found")


def validation_error(code: str, message: str) -> NoReturn:
    abort(400, code, message)


def conflict(code: str, message: str, **extra) -> NoReturn:
    abort(409, code, message, **extra)


def upstream_error(message: str) -> NoReturn:
    abort(502, "UPSTREAM_ERROR", message)
