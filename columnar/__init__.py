"""Columnar partition store: schemas, off-heap column buffers, wire format."""

from columnar.errors import ColumnarCudaError as ColumnarCudaError
from columnar.errors import UseAfterFree as UseAfterFree
from columnar.errors import WireFormatCorruption as WireFormatCorruption
from columnar.partition import ColumnarPartition as ColumnarPartition
from columnar.partition import build as build
from columnar.schema import Column as Column
from columnar.schema import ColumnType as ColumnType
from columnar.schema import PrimitiveKind as PrimitiveKind
from columnar.schema import Schema as Schema
from columnar.wire import from_wire_format as from_wire_format
from columnar.wire import to_wire_format as to_wire_format
