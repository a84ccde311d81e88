# api/routers/auth.py

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.engine import Connection

from .. import crud, schemas, security
from ..database import get_db

# This scheme will look for a token in the "Authorization" header.
# auto_error is off because open trees need no token at all.
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="trees/{tree_id}/auth", auto_error=False)

router = APIRouter(
    tags=["authentication"],
)


def get_tree_or_404(conn: Connection, tree_id: str):
    tree = crud.get_tree(conn, tree_id)
    if tree is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Tree not found")
    return tree


def require_tree_access(
    tree_id: str,
    conn: Connection = Depends(get_db),
    token: Optional[str] = Depends(oauth2_scheme),
    token_param: Optional[str] = Query(None, alias="token"),
):
    """
    The password gate. Open trees pass; protected trees need a bearer token
    (header or `token` query parameter) issued for this tree.
    """
    tree = get_tree_or_404(conn, tree_id)
    if not tree.password_hash:
        return tree
    if security.token_grants_tree(token or token_param, tree_id):
        return tree
    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Password required",
        headers={"WWW-Authenticate": "Bearer"},
    )


@router.post("/trees/{tree_id}/auth", response_model=schemas.Token)
def authenticate_tree(tree_id: str, form: schemas.TreeAuth, conn: Connection = Depends(get_db)):
    """
    Checks a tree password and returns an access token for the tree.
    Open trees get a token too, so clients can treat every tree alike.
    """
    tree = get_tree_or_404(conn, tree_id)
    if tree.password_hash and not security.verify_password(form.password, tree.password_hash):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect password",
            headers={"WWW-Authenticate": "Bearer"},
        )
    access_token = security.create_tree_access_token(tree_id)
    return {"access_token": access_token, "token_type": "bearer"}
