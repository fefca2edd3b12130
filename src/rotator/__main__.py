import os

import uvicorn


def main():
    uvicorn.run(
        "rotator.app:app",
        host=os.getenv("ROTATOR_HOST", "0.0.0.0"),
        port=int(os.getenv("ROTATOR_PORT", "8000")),
        lifespan="on",
    )


if __name__ == "__main__":
    main()
