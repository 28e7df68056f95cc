from fastapi.responses import JSONResponse


def error_response(error_code, status=400, message="An error occurred", data=None, headers=None):
    return JSONResponse(
        status_code=status,
        content={
            "ok": False,
            "data": data or {},
            "error": error_code,
            "message": message,
        },
        headers=headers,
    )
