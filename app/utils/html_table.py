"""
@description 轻量 HTML 表格提取
@responsibility 从指定 class 的 <table> 中提取行、单元格文本、属性和链接
"""

from dataclasses import dataclass, field
from html.parser import HTMLParser
from typing import Optional


@dataclass
class Anchor:
    href: str
    text: str = ""
    title: Optional[str] = None


@dataclass
class Cell:
    tag: str
    attrs: dict
    text: str = ""
    anchors: list[Anchor] = field(default_factory=list)

    @property
    def classes(self) -> list[str]:
        return (self.attrs.get("class") or "").split()


class TableParser(HTMLParser):
    """收集 class 包含 table_class 的表格中的所有行（不含嵌套表格的行）"""

    def __init__(self, table_class: str):
        super().__init__(convert_charrefs=True)
        self._table_class = table_class
        self._depth = 0
        self._row: Optional[list[Cell]] = None
        self._cell: Optional[Cell] = None
        self._anchor: Optional[Anchor] = None
        self.rows: list[list[Cell]] = []
        self.found = False

    def handle_starttag(self, tag, attrs):
        attrs_dict = {k: (v or "") for k, v in attrs}

        if tag == "table":
            if self._depth:
                self._depth += 1
            elif self._table_class in (attrs_dict.get("class") or "").split():
                self._depth = 1
                self.found = True
            return

        if self._depth != 1:
            return

        if tag == "tr":
            self._close_row()
            self._row = []
        elif tag in ("td", "th"):
            self._close_cell()
            if self._row is None:
                self._row = []
            self._cell = Cell(tag=tag, attrs=attrs_dict)
        elif tag == "a" and self._cell is not None:
            self._anchor = Anchor(href=attrs_dict.get("href", ""), title=attrs_dict.get("title"))

    def handle_endtag(self, tag):
        if tag == "table" and self._depth:
            if self._depth == 1:
                self._close_row()
            self._depth -= 1
            return

        if self._depth != 1:
            return

        if tag == "a":
            self._close_anchor()
        elif tag in ("td", "th"):
            self._close_cell()
        elif tag == "tr":
            self._close_row()

    def handle_data(self, data):
        if self._depth != 1 or self._cell is None:
            return
        self._cell.text += data
        if self._anchor is not None:
            self._anchor.text += data

    def _close_anchor(self):
        if self._anchor is not None and self._cell is not None:
            self._anchor.text = self._anchor.text.strip()
            self._cell.anchors.append(self._anchor)
        self._anchor = None

    def _close_cell(self):
        self._close_anchor()
        if self._cell is not None and self._row is not None:
            self._cell.text = " ".join(self._cell.text.split())
            self._row.append(self._cell)
        self._cell = None

    def _close_row(self):
        self._close_cell()
        if self._row:
            self.rows.append(self._row)
        self._row = None


def parse_table(html: str, table_class: str) -> Optional[list[list[Cell]]]:
    """返回表格的行列表，页面中没有该表格时返回 None"""
    parser = TableParser(table_class)
    parser.feed(html)
    parser.close()
    return parser.rows if parser.found else None
