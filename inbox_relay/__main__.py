import os

import uvicorn


def main() -> None:
    # Logging is configured by the app at startup
    uvicorn.run(
        "inbox_relay.main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "3000")),
        log_config=None,
    )


if __name__ == "__main__":
    main()
