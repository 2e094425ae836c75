import logging

from campus_comms.db import Base, engine
from campus_comms import models  # noqa: F401


logging.basicConfig(level=logging.INFO, format='%(asctime)s %(levelname)s %(name)s %(message)s')
logger = logging.getLogger('bootstrap')


def main():
    Base.metadata.create_all(bind=engine)
    logger.info('Schema ready: %s tables', len(Base.metadata.tables))


if __name__ == '__main__':
    main()
