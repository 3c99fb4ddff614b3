import uvicorn

from adfree_proxy.vars import HOST, PORT


def main() -> None:
    uvicorn.run("adfree_proxy.app:app", host=HOST, port=PORT, proxy_headers=False)


if __name__ == "__main__":
    main()
