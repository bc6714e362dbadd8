import uvicorn
import os

if __name__ == "__main__":
    workspace = os.environ.get("KERNFORGE_WORKSPACE", os.getcwd())

    print(f"Starting kernforge status server for {workspace}...")
    print("Docs available at: http://localhost:8000/docs")

    uvicorn.run(
        "kernforge.api.server:app",
        host=os.environ.get("KERNFORGE_HOST", "127.0.0.1"),
        port=int(os.environ.get("KERNFORGE_PORT", "8000")),
        reload=False
    )
