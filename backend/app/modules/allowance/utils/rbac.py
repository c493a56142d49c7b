from fastapi import HTTPException, status
from sqlalchemy.orm import Session

from app.modules.allowance.models import ACCOUNT_KIND_CHILD, Account
from app.modules.auth.deps import RequireRole, UserContext
from app.modules.auth.models import ROLE_CHILD, ROLE_PARENT


def RequireParent():
    return RequireRole(ROLE_PARENT)


def RequireChild():
    return RequireRole(ROLE_CHILD)


def LoadOwnedChild(db: Session, parent: UserContext, child_account_id: int) -> Account:
    # Someone else's child is reported exactly like a missing one.
    account = (
        db.query(Account)
        .filter(
            Account.Id == child_account_id,
            Account.Kind == ACCOUNT_KIND_CHILD,
            Account.OwnerAccountId == parent.AccountId,
            Account.IsDeleted == False,
        )
        .first()
    )
    if not account:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Child not found")
    return account
