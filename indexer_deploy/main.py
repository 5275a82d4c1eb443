import os

import uvicorn

from indexer_deploy.api.main import app


def main() -> None:
    host = (os.getenv("DEPLOY_HOST") or "127.0.0.1").strip()
    port = int((os.getenv("DEPLOY_PORT") or "8000").strip())
    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    main()
