"""Run the gateway: ``python -m gateway``."""

import uvicorn

from automation import config


def main():
    uvicorn.run("gateway.main:app", host=config.API_HOST, port=config.API_PORT)


if __name__ == "__main__":
    main()
