import uvicorn

from claimfleet.config import cfg


def main():
    uvicorn.run("claimfleet.app:app", host=cfg["server"]["host"], port=cfg["server"]["port"], lifespan="on")


if __name__ == "__main__":
    main()
