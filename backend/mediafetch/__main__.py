"""
Run the API with uvicorn: python -m mediafetch
"""
import uvicorn

from mediafetch.core.config import settings


def main():
    uvicorn.run("mediafetch.main:app", host=settings.HOST, port=settings.PORT)


if __name__ == "__main__":
    main()
