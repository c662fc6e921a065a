"""API server entry point for python -m ugcpipe.api"""
import uvicorn
from ugcpipe.config import settings

if __name__ == "__main__":
    uvicorn.run(
        "ugcpipe.api.app:app",
        host=settings.server.host,
        port=settings.server.port,
        reload=False,
    )
