import logging

from typing import Iterable

from wrowlog.measurements import format_value

logger = logging.getLogger(__name__)

'''
Row grammar of the CSV flavour read by the FIT SDK's FitCSVTool, which turns the
recorded file into a binary .fit activity:

    Type,Local Number,Message,Field 1,Value 1,Units 1,...
    Definition,<n>,<message>,<field>,1,,<field>,1,
    Data,<n>,<message>,<field>,"<value>",<units>,<field>,"<value>",<units>,

Both row types join their cells with commas, so a field whose units are blank ends
in a single comma. A data row whose last field has units closes with one more comma.
'''

FIELD_DEFINITION_SIZE = "1"


def header_row(num_fields: int) -> str:
    columns = ["Type", "Local Number", "Message"]
    for i in range(1, num_fields + 1):
        columns += [f"Field {i}", f"Value {i}", f"Units {i}"]
    return ",".join(columns)


def definition_row(local_number: int, message: str, field_names: Iterable[str], trailing_blank: bool = False) -> str:
    row = f"Definition,{local_number},{message}," + ",".join(f"{name},{FIELD_DEFINITION_SIZE}," for name in field_names)
    if trailing_blank:
        row += ","
    return row


def data_row(local_number: int, message: str, fields: Iterable[tuple[str, float | str, str]]) -> str:
    fields = list(fields)
    row = f"Data,{local_number},{message}," + ",".join(f'{name},"{_render(value)}",{unit}' for name, value, unit in fields)
    if fields and fields[-1][2]:
        row += ","
    return row


def _render(value: float | str) -> str:
    if isinstance(value, str):
        return value
    return format_value(value)
