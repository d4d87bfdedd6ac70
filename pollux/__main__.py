import os

import uvicorn


def main() -> None:
    uvicorn.run(
        "pollux.main:app",
        host=os.getenv("POLLUX_HOST", "0.0.0.0"),
        port=int(os.getenv("POLLUX_PORT", "8080")),
    )


if __name__ == "__main__":
    main()
