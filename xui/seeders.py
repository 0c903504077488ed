# xui/seeders.py
from sqlalchemy.orm import Session

import config
from . import models, security
from .logger import get_logger

logger = get_logger("seeders")

USER_PASSWORD_HASH = "UserPasswordHash"


def _seeder_names(db: Session):
    return {row.seeder_name for row in db.query(models.HistoryOfSeeders).all()}


def init_user(db: Session) -> bool:
    """Create the default admin when the users table is empty."""
    if db.query(models.User).count() > 0:
        return False
    db.add(models.User(
        username=config.DEFAULT_ADMIN_USERNAME,
        password=security.get_password_hash(config.DEFAULT_ADMIN_PASSWORD),
    ))
    db.commit()
    return True


def run_seeders(db: Session):
    users_were_empty = db.query(models.User).count() == 0
    init_user(db)

    names = _seeder_names(db)
    if USER_PASSWORD_HASH in names:
        return

    if not users_were_empty:
        # databases from older builds stored plaintext passwords
        for user in db.query(models.User).all():
            if not security.is_bcrypt_hash(user.password):
                user.password = security.get_password_hash(user.password)
                logger.info("rehashed password of user %s", user.username)
    db.add(models.HistoryOfSeeders(seeder_name=USER_PASSWORD_HASH))
    db.commit()
