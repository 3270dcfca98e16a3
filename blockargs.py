# Boilerplate

import logging
import math
import struct
from dataclasses import dataclass
from enum import Enum
from typing import Protocol, runtime_checkable

logger = logging.getLogger(__name__)

POINTER_SIZE = 8
BYTE_ORDER = 'little'

class ArgumentError(ValueError):
  def __init__(self, message, index = None, required = None, provided = None):
    super().__init__(message)
    self.index = index
    self.required = required
    self.provided = provided

class ArgumentCountMismatch(ArgumentError): pass
class MissingRequiredArgument(ArgumentError): pass
class ArgumentMustBeBoxed(ArgumentError): pass
class ArgumentMustBeNumber(ArgumentError): pass
class LossyConversion(ArgumentError): pass
class ArgumentTypeMismatch(ArgumentError): pass
class UnknownTypeEncoding(ArgumentError): pass

class NoDefault(ArgumentError): pass

def fail_if(cond, error, message, **details):
  if cond:
    raise error(message, **details)

def struct_format(c):
  return ('<' if BYTE_ORDER == 'little' else '>') + c

# Types

class Object: pass
class Void: pass
class Bool: pass
class S8: pass
class U8: pass
class S16: pass
class U16: pass
class S32: pass
class U32: pass
class S64: pass
class U64: pass
class Float32: pass
class Float64: pass
class CString: pass
class Class: pass
class Selector: pass

@dataclass
class Unknown:
  marker: str

@dataclass
class Bitfield:
  bits: int

@dataclass
class Pointer:
  t: any

@dataclass
class Struct:
  name: str
  fields: [any]

@dataclass
class Union:
  name: str
  fields: [any]

@dataclass
class Array:
  length: int
  t: any

SIMPLE_TYPES = {
  '@': Object, 'v': Void, 'B': Bool,
  'c': S8, 'C': U8, 's': S16, 'S': U16, 'i': S32, 'I': U32,
  'l': S32, 'L': U32, 'q': S64, 'Q': U64,
  'f': Float32, 'd': Float64,
  '*': CString, '#': Class, ':': Selector,
}

QUALIFIERS = 'rnNoORVAj'

# Parsing

def parse_type(s, i = 0):
  while i < len(s) and s[i] in QUALIFIERS:
    i += 1
  fail_if(i >= len(s), UnknownTypeEncoding, "Type encoding {!r} ends before a type.".format(s))
  c = s[i]
  i += 1
  match c:
    case '@':
      if s.startswith('?', i):
        i += 1
      elif s.startswith('"', i):
        i = skip_quoted(s, i)
      return (Object(), i)
    case '^':
      if i >= len(s) or s[i] in '}])':
        return (Pointer(Unknown('')), i)
      t, i = parse_type(s, i)
      return (Pointer(t), i)
    case 'b':
      bits, i = parse_number(s, i)
      return (Bitfield(bits), i)
    case '[':
      length, i = parse_number(s, i)
      t, i = parse_type(s, i)
      fail_if(not s.startswith(']', i), UnknownTypeEncoding, "Unterminated array in type encoding {!r}.".format(s))
      return (Array(length, t), i + 1)
    case '{':
      name, fields, i = parse_aggregate(s, i, '}')
      return (Struct(name, fields), i)
    case '(':
      name, fields, i = parse_aggregate(s, i, ')')
      return (Union(name, fields), i)
    case _ if c in SIMPLE_TYPES:
      return (SIMPLE_TYPES[c](), i)
    case _:
      return (Unknown(c), i)

def parse_number(s, i):
  start = i
  while i < len(s) and s[i].isdigit():
    i += 1
  fail_if(start == i, UnknownTypeEncoding, "Expected a number at offset {} of type encoding {!r}.".format(start, s))
  return (int(s[start:i]), i)

def skip_quoted(s, i):
  end = s.find('"', i + 1)
  fail_if(end == -1, UnknownTypeEncoding, "Unterminated name in type encoding {!r}.".format(s))
  return end + 1

def parse_aggregate(s, i, close):
  start = i
  while i < len(s) and s[i] not in '=' + close:
    i += 1
  fail_if(i >= len(s), UnknownTypeEncoding, "Unterminated aggregate in type encoding {!r}.".format(s))
  name = s[start:i]
  if s[i] == close:
    return (name, None, i + 1)
  i += 1
  fields = []
  while True:
    fail_if(i >= len(s), UnknownTypeEncoding, "Unterminated aggregate in type encoding {!r}.".format(s))
    if s[i] == close:
      break
    if s[i] == '"':
      i = skip_quoted(s, i)
    t, i = parse_type(s, i)
    fields.append(t)
  # {name=} is as opaque as {name}
  return (name, fields or None, i + 1)

def skip_offset(s, i):
  if s.startswith('-', i):
    i += 1
  while i < len(s) and s[i].isdigit():
    i += 1
  return i

def decode(encoding):
  t, i = parse_type(encoding)
  i = skip_offset(encoding, i)
  fail_if(i != len(encoding) and not isinstance(t, Unknown), UnknownTypeEncoding,
          "Unexpected characters after type in encoding {!r}.".format(encoding))
  return t

def parse_signature(s):
  encodings = []
  i = 0
  while i < len(s):
    start = i
    _, i = parse_type(s, i)
    encodings.append(s[start:i])
    i = skip_offset(s, i)
  return encodings

# Categories

class Category(Enum):
  OBJECT = 'object'
  VOID_POINTER = 'void pointer'
  GENERIC_POINTER = 'generic pointer'
  TYPED_POINTER = 'typed pointer'
  BOOL = 'bool'
  INT = 'int'
  FLOAT32 = 'float32'
  FLOAT64 = 'float64'
  OPAQUE_STRUCT = 'opaque struct'
  UNKNOWN = 'unknown'

NUMERIC = { Category.BOOL, Category.INT, Category.FLOAT32, Category.FLOAT64 }
POINTERS = { Category.VOID_POINTER, Category.GENERIC_POINTER, Category.TYPED_POINTER }
UNTYPED_POINTERS = { Category.VOID_POINTER, Category.GENERIC_POINTER }

def category(t):
  match t:
    case Object()                                      : return Category.OBJECT
    case Pointer(Void())                               : return Category.VOID_POINTER
    case Pointer(Unknown())                            : return Category.GENERIC_POINTER
    case Pointer(_) | CString() | Class() | Selector() : return Category.TYPED_POINTER
    case Bool()                                        : return Category.BOOL
    case S8() | U8() | S16() | U16()                   : return Category.INT
    case S32() | U32() | S64() | U64()                 : return Category.INT
    case Float32()                                     : return Category.FLOAT32
    case Float64()                                     : return Category.FLOAT64
    case Struct() | Union() | Array()                  : return Category.OPAQUE_STRUCT
    case _                                             : return Category.UNKNOWN

def classify(encoding):
  return category(decode(encoding))

def is_numeric(c):
  return c in NUMERIC

def is_pointer(c):
  return c in POINTERS

def is_signed(t):
  match t:
    case S8() | S16() | S32() | S64() : return True
    case _                            : return False

# Alignment

def alignment(t):
  match t:
    case Bool() | S8() | U8()     : return 1
    case S16() | U16()            : return 2
    case S32() | U32() | Float32(): return 4
    case S64() | U64() | Float64(): return 8
    case Object() | Pointer(_)    : return POINTER_SIZE
    case CString() | Class()      : return POINTER_SIZE
    case Selector()               : return POINTER_SIZE
    case Struct(_, fields) | Union(_, fields):
      fail_if(fields is None, UnknownTypeEncoding, "Type {} has no known layout.".format(describe(t)))
      return max_alignment(fields)
    case Array(_, t)              : return alignment(t)
    case _                        : raise UnknownTypeEncoding("Type {} has no known layout.".format(describe(t)))

def max_alignment(ts):
  a = 1
  for t in ts:
    a = max(a, alignment(t))
  return a

# Size

def elem_size(t):
  return align_to(byte_size(t), alignment(t))

def align_to(ptr, alignment):
  return math.ceil(ptr / alignment) * alignment

def byte_size(t):
  match t:
    case Bool() | S8() | U8()     : return 1
    case S16() | U16()            : return 2
    case S32() | U32() | Float32(): return 4
    case S64() | U64() | Float64(): return 8
    case Object() | Pointer(_)    : return POINTER_SIZE
    case CString() | Class()      : return POINTER_SIZE
    case Selector()               : return POINTER_SIZE
    case Struct(_, fields)        : return byte_size_struct(t, fields)
    case Union(_, fields)         : return byte_size_union(t, fields)
    case Array(n, et)             : return n * elem_size(et)
    case _                        : raise UnknownTypeEncoding("Type {} has no known layout.".format(describe(t)))

def byte_size_struct(t, fields):
  a = alignment(t)
  s = 0
  for f in fields:
    s = align_to(s, alignment(f))
    s += byte_size(f)
  return align_to(s, a)

def byte_size_union(t, fields):
  a = alignment(t)
  s = 0
  for f in fields:
    s = max(s, byte_size(f))
  return align_to(s, a)

def size_and_alignment(encoding):
  t = decode(encoding)
  return (byte_size(t), alignment(t))

def slot_layout(t, required, index):
  try:
    return (byte_size(t), alignment(t))
  except UnknownTypeEncoding as e:
    raise UnknownTypeEncoding(
      "Argument at index {} has type {} which has no known layout.".format(index, required),
      index=index, required=required) from e

def describe(t):
  match t:
    case Unknown(marker)  : return repr(marker)
    case Bitfield(bits)   : return 'bitfield of {} bits'.format(bits)
    case Struct(name, _)  : return 'struct {}'.format(name)
    case Union(name, _)   : return 'union {}'.format(name)
    case _                : return type(t).__name__

# Equality

def compatible(a, b):
  return equal_types(decode(a), decode(b))

def equal_types(a, b):
  ca = category(a)
  cb = category(b)
  if is_pointer(ca) and is_pointer(cb) and (ca in UNTYPED_POINTERS or cb in UNTYPED_POINTERS):
    return True
  match (a, b):
    case (Struct(n1, f1), Struct(n2, f2)) | (Union(n1, f1), Union(n2, f2)):
      if not same_name(n1, n2):
        return False
      if f1 is None or f2 is None:
        return True
      return len(f1) == len(f2) and all(equal_types(x, y) for x, y in zip(f1, f2))
    case (Pointer(t1), Pointer(t2)):
      return equal_types(t1, t2)
    case (Array(n1, t1), Array(n2, t2)):
      return n1 == n2 and equal_types(t1, t2)
    case _:
      return type(a) is type(b) and vars(a) == vars(b)

def same_name(n1, n2):
  # anonymous aggregates are encoded as '?'
  return n1 == n2 or n1 in ('', '?') or n2 in ('', '?')

# Loading

def load(memory, ptr, t):
  assert(ptr == align_to(ptr, alignment(t)))
  match t:
    case Bool()        : return bool(load_int(memory, ptr, 1))
    case U8()          : return load_int(memory, ptr, 1)
    case U16()         : return load_int(memory, ptr, 2)
    case U32()         : return load_int(memory, ptr, 4)
    case U64()         : return load_int(memory, ptr, 8)
    case S8()          : return load_int(memory, ptr, 1, signed=True)
    case S16()         : return load_int(memory, ptr, 2, signed=True)
    case S32()         : return load_int(memory, ptr, 4, signed=True)
    case S64()         : return load_int(memory, ptr, 8, signed=True)
    case Float32()     : return struct.unpack_from(struct_format('f'), memory, ptr)[0]
    case Float64()     : return struct.unpack_from(struct_format('d'), memory, ptr)[0]
    case Pointer(_) | CString() | Class() | Selector():
      return load_int(memory, ptr, POINTER_SIZE)
    case Struct(_, fields):
      return load_struct(memory, ptr, fields)
    case Union() | Array():
      return bytes(memory[ptr : ptr + byte_size(t)])
    case _:
      raise UnknownTypeEncoding("Cannot load a value of type {}.".format(describe(t)))

def load_int(memory, ptr, nbytes, signed = False):
  return int.from_bytes(memory[ptr : ptr + nbytes], BYTE_ORDER, signed=signed)

def load_struct(memory, ptr, fields):
  values = []
  for f in fields:
    ptr = align_to(ptr, alignment(f))
    values.append(load(memory, ptr, f))
    ptr += byte_size(f)
  return tuple(values)

# Storing

def store(memory, v, t, ptr):
  assert(ptr == align_to(ptr, alignment(t)))
  match t:
    case Bool()        : store_int(memory, int(v), ptr, 1)
    case U8()          : store_int(memory, v, ptr, 1)
    case U16()         : store_int(memory, v, ptr, 2)
    case U32()         : store_int(memory, v, ptr, 4)
    case U64()         : store_int(memory, v, ptr, 8)
    case S8()          : store_int(memory, v, ptr, 1, signed=True)
    case S16()         : store_int(memory, v, ptr, 2, signed=True)
    case S32()         : store_int(memory, v, ptr, 4, signed=True)
    case S64()         : store_int(memory, v, ptr, 8, signed=True)
    case Float32()     : struct.pack_into(struct_format('f'), memory, ptr, v)
    case Float64()     : struct.pack_into(struct_format('d'), memory, ptr, v)
    case Pointer(_) | CString() | Class() | Selector():
      store_int(memory, v, ptr, POINTER_SIZE)
    case Struct(_, fields):
      store_struct(memory, v, ptr, fields)
    case Array(n, et) if not isinstance(v, (bytes, bytearray)):
      fail_if(len(v) != n, ArgumentTypeMismatch, "Expected {} array elements but got {}.".format(n, len(v)))
      for i, e in enumerate(v):
        store(memory, e, et, ptr + i * elem_size(et))
    case Union() | Array():
      size = byte_size(t)
      fail_if(len(v) != size, ArgumentTypeMismatch, "Expected {} bytes for {} but got {}.".format(size, describe(t), len(v)))
      memory[ptr : ptr + size] = v
    case _:
      raise UnknownTypeEncoding("Cannot store a value of type {}.".format(describe(t)))

def store_int(memory, v, ptr, nbytes, signed = False):
  memory[ptr : ptr + nbytes] = int.to_bytes(v, nbytes, BYTE_ORDER, signed=signed)

def store_struct(memory, v, ptr, fields):
  fail_if(len(v) != len(fields), ArgumentTypeMismatch, "Expected {} struct fields but got {}.".format(len(fields), len(v)))
  for f, e in zip(fields, v):
    ptr = align_to(ptr, alignment(f))
    store(memory, e, f, ptr)
    ptr += byte_size(f)

# Boxing

class Null:
  def __repr__(self):
    return 'NULL'

NULL = Null()

@dataclass(frozen=True)
class Value:
  t: str
  v: bytes

  def __post_init__(self):
    size, _ = size_and_alignment(self.t)
    fail_if(not isinstance(self.v, (bytes, bytearray, memoryview)), ArgumentError,
            "Value of type {} needs a bytes payload but got {!r}.".format(self.t, self.v),
            provided=self.t)
    object.__setattr__(self, 'v', bytes(self.v))
    fail_if(len(self.v) != size, ArgumentError,
            "Value of type {} needs {} bytes but got {}.".format(self.t, size, len(self.v)),
            provided=self.t)

def box(encoding, v):
  t = decode(encoding)
  memory = bytearray(byte_size(t))
  try:
    store(memory, v, t, 0)
  except OverflowError as e:
    raise LossyConversion("Value {!r} does not fit in type {}.".format(v, encoding), required=encoding) from e
  return Value(encoding, memory)

def is_absent(arg):
  return arg is None or arg is NULL

# Defaults

def synthesize_default(encoding):
  t = decode(encoding)
  match category(t):
    case Category.OBJECT:
      return None
    case Category.VOID_POINTER | Category.GENERIC_POINTER | Category.TYPED_POINTER:
      return bytes(POINTER_SIZE)
    case Category.BOOL | Category.INT | Category.FLOAT32 | Category.FLOAT64:
      return bytes(byte_size(t))
    case Category.OPAQUE_STRUCT | Category.UNKNOWN:
      raise NoDefault("Unable to create default value for type {}.".format(encoding), required=encoding)

# Coercion

def coerce(arg, required, index = 0):
  if is_absent(arg):
    try:
      return synthesize_default(required)
    except NoDefault as e:
      raise MissingRequiredArgument(
        "Unable to create default value for type {} at index {}. All arguments must be specified for this block."
        .format(required, index), index=index, required=required) from e

  t = decode(required)
  slot_layout(t, required, index)
  c = category(t)
  if c == Category.OBJECT:
    if isinstance(arg, Value):
      raise ArgumentTypeMismatch(
        "Argument type mismatch at index {}; block requires {} but argument provided is a Value boxing {}."
        .format(index, required, arg.t), index=index, required=required, provided=arg.t)
    return arg

  fail_if(not isinstance(arg, Value), ArgumentMustBeBoxed,
          "Argument at index {} should be boxed in a Value; block requires {}.".format(index, required),
          index=index, required=required)
  declared = decode(arg.t)
  if is_numeric(c):
    fail_if(not is_numeric(category(declared)), ArgumentMustBeNumber,
            "Argument at index {} must be a number; block requires {} but argument provided is {}."
            .format(index, required, arg.t), index=index, required=required, provided=arg.t)
    return convert_number(arg, declared, t, required, index)

  if c in UNTYPED_POINTERS and is_pointer(category(declared)):
    return arg.v
  fail_if(not equal_types(t, declared), ArgumentTypeMismatch,
          "Argument type mismatch at index {}; block requires {} but argument provided is {}."
          .format(index, required, arg.t), index=index, required=required, provided=arg.t)
  return arg.v

def convert_number(arg, declared, t, required, index):
  v = load(arg.v, 0, declared)
  fail_if(not exactly_representable(v, t), LossyConversion,
          "Argument at index {} holds {!r} which cannot be represented exactly as {} (provided as {})."
          .format(index, v, required, arg.t), index=index, required=required, provided=arg.t)
  if category(t) == Category.INT:
    v = int(v)
  memory = bytearray(byte_size(t))
  store(memory, v, t, 0)
  return bytes(memory)

def exactly_representable(v, t):
  match t:
    case Bool():
      return v == 0 or v == 1
    case Float32():
      if isinstance(v, float) and not math.isfinite(v):
        return True
      try:
        return round_to_float32(v) == v
      except OverflowError:
        return False
    case Float64():
      if isinstance(v, float):
        return True
      try:
        return float(v) == v
      except OverflowError:
        return False
    case _:
      if isinstance(v, float) and not v.is_integer():
        return False
      lo, hi = int_range(t)
      return lo <= v < hi

def round_to_float32(v):
  return struct.unpack(struct_format('f'), struct.pack(struct_format('f'), v))[0]

def int_range(t):
  bits = 8 * byte_size(t)
  if is_signed(t):
    return (-(1 << (bits - 1)), 1 << (bits - 1))
  return (0, 1 << bits)

# Frames

class Frame:
  def __init__(self, signature):
    self.signature = signature
    self.types = [decode(s) for s in signature]
    self.offsets = []
    ptr = 0
    for i, t in enumerate(self.types):
      # slot 0 is the hidden block slot
      size, a = slot_layout(t, signature[i], i - 1)
      ptr = align_to(ptr, a)
      self.offsets.append(ptr)
      ptr += size
    self.memory = bytearray(ptr)
    self.objects = {}

  def __len__(self):
    return len(self.signature)

  def set_argument(self, i, v):
    t = self.types[i]
    if category(t) == Category.OBJECT:
      self.objects[i] = v
      return
    size = byte_size(t)
    assert(len(v) == size)
    self.memory[self.offsets[i] : self.offsets[i] + size] = v

  def get_argument(self, i):
    t = self.types[i]
    if category(t) == Category.OBJECT:
      return self.objects.get(i)
    return bytes(self.memory[self.offsets[i] : self.offsets[i] + byte_size(t)])

  def load_argument(self, i):
    t = self.types[i]
    if category(t) == Category.OBJECT:
      return self.objects.get(i)
    return load(self.memory, self.offsets[i], t)

  def arguments(self):
    """Decoded values of every slot after the hidden block slot."""
    return [self.load_argument(i) for i in range(1, len(self))]

# Invoking

@runtime_checkable
class Invocable(Protocol):
  signature: str

  def invoke(self, frame): ...

class Block:
  def __init__(self, signature, func):
    self.signature = signature
    self.func = func

  def __repr__(self):
    return 'Block({!r})'.format(self.signature)

  def invoke(self, frame):
    assert(frame.get_argument(0) is self)
    self.func(*frame.arguments())

def signature_of(block):
  encodings = parse_signature(block.signature)
  fail_if(len(encodings) < 2 or classify(encodings[1]) != Category.OBJECT, UnknownTypeEncoding,
          "Signature {!r} does not describe a block.".format(block.signature))
  # drop the return type, keep the hidden block slot
  return encodings[1:]

def build_invocation(block, arguments):
  signature = signature_of(block)
  num_args_required = len(signature) - 1
  fail_if(arguments is None and num_args_required != 0, ArgumentCountMismatch,
          "No arguments specified for block; expected {} arguments.".format(num_args_required))
  fail_if(arguments is not None and len(arguments) != num_args_required, ArgumentCountMismatch,
          "Specified {} arguments for block; expected {} arguments.".format(len(arguments or ()), num_args_required))

  values = [coerce(arg, signature[i + 1], i) for i, arg in enumerate(arguments or ())]
  frame = Frame(signature)
  frame.set_argument(0, block)
  for i, v in enumerate(values):
    frame.set_argument(i + 1, v)
  logger.debug(f"Built frame for {block!r} with {num_args_required} arguments")
  return frame

def invoke(block, frame):
  if block is None:
    return
  assert(isinstance(block, Invocable))
  logger.debug(f"Invoking {block!r}")
  block.invoke(frame)

# Marshaling

class BlockArgCaller:
  def __init__(self, arguments = None):
    self.arguments = None if arguments is None else tuple(arguments)

  def __copy__(self):
    return self

  def __deepcopy__(self, memo):
    return self

  def duplicate(self):
    return self

  def build_invocation(self, block):
    return build_invocation(block, self.arguments)

  def handle_argument(self, block):
    if block is not None:
      invoke(block, self.build_invocation(block))
