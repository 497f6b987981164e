import uvicorn

from .api import create_app
from .logging import setup_logging
from .settings import load_settings


def main():
    s = load_settings()
    setup_logging(s.log_level)
    uvicorn.run(create_app(s), host=s.host, port=s.port)


if __name__ == "__main__":
    main()
