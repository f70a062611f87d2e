from __future__ import annotations

import os

import uvicorn


def main() -> None:
    port = int(os.environ.get("PORT") or "3000")
    host = (os.environ.get("HOST") or "0.0.0.0").strip()
    uvicorn.run("app.main:app", host=host, port=port)


if __name__ == "__main__":
    main()
