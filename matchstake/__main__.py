import uvicorn

from matchstake.config import settings


def run() -> None:
    uvicorn.run("matchstake.main:app", host=settings.host, port=settings.port)


if __name__ == "__main__":
    run()
