import uvicorn

if __name__ == "__main__":
    uvicorn.run("crm_access.main:app", host="0.0.0.0", port=8001, reload=True)
