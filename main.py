import uvicorn

from src.filmix_gateway.main import app

if __name__ == "__main__":
    uvicorn.run("src.filmix_gateway.main:app", host="0.0.0.0", port=8000, reload=True)
