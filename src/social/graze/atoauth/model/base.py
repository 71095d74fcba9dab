from sqlalchemy import String, orm

from typing_extensions import Annotated

str512 = Annotated[str, 512]


class Base(orm.DeclarativeBase):
    type_annotation_map = {
        str512: String(512),
    }
