import uvicorn

from reverse_proxy.vars import HOST, LOG_LEVEL, PORT


def main() -> None:
    """Serve the proxy app with uvicorn, configured from the environment."""
    uvicorn.run("reverse_proxy.server:app", host=HOST, port=PORT, log_level=LOG_LEVEL)


if __name__ == "__main__":
    main()
