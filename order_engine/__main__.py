import uvicorn

uvicorn.run("order_engine.main:app", host="0.0.0.0", port=8000)
