"""
Expose the FastAPI application factory.

Run the service with ``python -m``, which reads its configuration from the
environment:

```sh
python -m polyexec.api
```

or hand the factory to Uvicorn directly:

```sh
uvicorn polyexec.api:create_app --factory --port 8080
```
"""

from .main import create_app

__all__ = ["create_app"]
