# Simple local runner. Deployments should start with:
#   uvicorn renderflow.main:app --host 0.0.0.0 --port 8000
import os

from renderflow.main import app

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
