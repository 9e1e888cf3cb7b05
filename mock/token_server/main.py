from collections import defaultdict

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

app = FastAPI(title="Mock Token Ledger", version="1.0.0")

balances: dict = defaultdict(lambda: defaultdict(int))
allowances: dict = defaultdict(lambda: defaultdict(int))


class Transfer(BaseModel):
    sender: str
    recipient: str
    amount: str


class TransferFrom(Transfer):
    spender: str


class Mint(BaseModel):
    account: str
    amount: str


class Approve(BaseModel):
    owner: str
    spender: str
    amount: str


@app.get("/health")
def health(): return {"status": "ok"}

@app.get("/tokens/{token}/balances/{account}")
def balance(token: str, account: str):
    return {"token": token, "account": account, "balance": str(balances[token][account])}

@app.post("/tokens/{token}/mint")
def mint(token: str, body: Mint):
    balances[token][body.account] += int(body.amount)
    return {"status": "ok"}

@app.post("/tokens/{token}/approve")
def approve(token: str, body: Approve):
    allowances[token][(body.owner, body.spender)] = int(body.amount)
    return {"status": "ok"}

@app.post("/tokens/{token}/transfer")
def transfer(token: str, body: Transfer):
    amount = int(body.amount)
    if amount <= 0 or balances[token][body.sender] < amount:
        raise HTTPException(status_code=402, detail="insufficient balance")
    balances[token][body.sender] -= amount
    balances[token][body.recipient] += amount
    return {"status": "ok"}

@app.post("/tokens/{token}/transfer-from")
def transfer_from(token: str, body: TransferFrom):
    amount = int(body.amount)
    key = (body.sender, body.spender)
    if allowances[token][key] < amount:
        raise HTTPException(status_code=402, detail="insufficient allowance")
    if amount <= 0 or balances[token][body.sender] < amount:
        raise HTTPException(status_code=402, detail="insufficient balance")
    allowances[token][key] -= amount
    balances[token][body.sender] -= amount
    balances[token][body.recipient] += amount
    return {"status": "ok"}
