from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

app = FastAPI(title="Mock Event Sink", version="1.0.0")
received: list = []

@app.get("/health")
def health(): return {"status": "ok"}

@app.post("/events")
async def events(request: Request, mode: str = "ok"):
    payload = await request.json()
    if mode == "fail":
        return JSONResponse(content={"status":"error","received":payload}, status_code=500)
    received.append(payload)
    return {"status": "ok", "received": payload}

@app.get("/events")
def list_events(): return {"events": received}
