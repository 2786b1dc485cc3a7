from collections import namedtuple
from datetime import datetime
from struct import Struct
import asyncio
import inspect
import logging
import os
import secrets
import zlib

from Crypto.Cipher import AES
from Crypto.Hash import HMAC, SHA1
from Crypto.Util import Counter
from Crypto.Protocol.KDF import PBKDF2

__log__ = logging.getLogger(__name__)

# Private constants

_PENDING = object()

_local_header_signature = b'PK\x03\x04'
_header_struct = Struct('<HHHHHIIIHH')
_header_sizes_struct = Struct('<III')

_data_descriptor_signature = b'PK\x07\x08'
_data_descriptor_struct = Struct('<4sIII')

_central_directory_header_signature = b'PK\x01\x02'
_central_directory_header_struct = Struct('<4sH26sHHHII')

_end_of_central_directory_signature = b'PK\x05\x06'
_end_of_central_directory_struct = Struct('<4sHHHHIIH')

_aes_extra = bytes((
    0x01, 0x99,  # Extra id 0x9901
    0x07, 0x00,  # Size of extra
    0x02, 0x00,  # AE-2
    0x41, 0x45,  # Vendor id "AE"
    0x03,        # AES-256
    0x00, 0x00,  # Compression method of the encrypted data
))
_aes_extra_compression_index = 9

_encrypted_flags = 0b0000000000001001
_plain_flags = 0b0000100000001000

_min_date_time = (1980, 1, 1, 0, 0, 0)
_max_date_time = (2107, 12, 31, 23, 59, 59)


def _raise_if_beyond(value, maximum, exception_class):
    if value > maximum:
        raise exception_class()


def _to_bytes(value):
    return value.encode('utf-8') if isinstance(value, str) else bytes(value)


def _dos_date_time(modified_at):
    date_time = modified_at.timetuple()[:6]
    if not (_min_date_time <= date_time <= _max_date_time):
        __log__.warning(
            "Date of %s is outside of the supported range for zip files "
            "and was automatically adjusted",
            date_time,
        )
        date_time = min(max(_min_date_time, date_time), _max_date_time)
    year, month, day, hour, minute, second = date_time
    return (
        (hour << 11) | (minute << 5) | (second // 2),
        ((year - 1980) << 9) | (month << 5) | day,
    )


# Sinks and sources

class Writer:
    """Append-only output of the archive bytes"""

    def __init__(self):
        self.initialized = False

    async def init(self):
        self.initialized = True

    async def write(self, data):
        raise NotImplementedError()

    async def get_data(self):
        raise NotImplementedError()


class BytesWriter(Writer):

    def __init__(self):
        super().__init__()
        self._data = bytearray()

    async def write(self, data):
        self._data += data

    async def get_data(self):
        return bytes(self._data)


class FileWriter(Writer):
    """Writes to a binary file object, which get_data returns"""

    def __init__(self, fileobj):
        super().__init__()
        self._fileobj = fileobj

    async def write(self, data):
        await asyncio.to_thread(self._fileobj.write, data)

    async def get_data(self):
        await asyncio.to_thread(self._fileobj.flush)
        return self._fileobj


class Reader:
    """Source of an entry's content. size is only known after init"""

    def __init__(self):
        self.size = 0
        self.initialized = False

    async def init(self):
        self.initialized = True

    async def read(self, index, length):
        raise NotImplementedError()

    async def close(self):
        pass


class BytesReader(Reader):

    def __init__(self, data):
        super().__init__()
        self._data = data

    async def init(self):
        self.size = len(self._data)
        await super().init()

    async def read(self, index, length):
        return bytes(self._data[index:index + length])


class TextReader(BytesReader):

    def __init__(self, text, encoding='utf-8'):
        super().__init__(text.encode(encoding))


class FileReader(Reader):

    """Reads from a path, which stays open between init and close"""

    def __init__(self, path):
        super().__init__()
        self._path = path
        self._file = None

    async def init(self):
        self._file = await asyncio.to_thread(open, self._path, 'rb')
        self.size = os.fstat(self._file.fileno()).st_size
        await super().init()

    async def read(self, index, length):
        def _read():
            self._file.seek(index)
            return self._file.read(length)

        return await asyncio.to_thread(_read)

    async def close(self):
        if self._file is not None:
            await asyncio.to_thread(self._file.close)
            self._file = None


# Processing pipeline

_Result = namedtuple('_Result', ('length', 'size', 'signature'))


class _Codec:
    # Deflate, then WinZip AES-256 (AE-2) on the deflated bytes. The CRC-32
    # is of the original content, and is only computed when signed

    key_length = 32
    salt_length = 16
    password_verification_length = 2
    hmac_length = 10
    encryption_size_increase = salt_length + password_verification_length + hmac_length

    def __init__(self, level, password, signed, compressed, encrypted, get_crypto_random):
        self._compress_obj = \
            zlib.compressobj(level, zlib.DEFLATED, -zlib.MAX_WBITS) if compressed else \
            None
        self._crc_32 = zlib.crc32(b'') if signed else None
        self._encrypter = None
        self._hmac = None
        self._prefix = b''

        if encrypted:
            salt = get_crypto_random(self.salt_length)
            keys = PBKDF2(
                password, salt,
                2 * self.key_length + self.password_verification_length, 1000,
            )
            self._prefix = salt + keys[-self.password_verification_length:]
            self._encrypter = AES.new(
                keys[:self.key_length], AES.MODE_CTR,
                counter=Counter.new(nbits=128, little_endian=True),
            )
            self._hmac = HMAC.new(keys[self.key_length:self.key_length * 2], digestmod=SHA1)

    def _output(self, data):
        if self._encrypter is not None:
            data = self._encrypter.encrypt(data)
            self._hmac.update(data)
        prefix, self._prefix = self._prefix, b''
        return prefix + data

    def append(self, chunk):
        if self._crc_32 is not None:
            self._crc_32 = zlib.crc32(chunk, self._crc_32)
        if self._compress_obj is not None:
            chunk = self._compress_obj.compress(chunk)
        return self._output(chunk)

    def flush(self):
        data = self._output(self._compress_obj.flush() if self._compress_obj is not None else b'')
        if self._hmac is not None:
            data += self._hmac.digest()[:self.hmac_length]
        return data, self._crc_32


async def _process_data(codec, reader, writer, size, chunk_size, on_progress):
    length = 0
    index = 0

    async def _write(data):
        nonlocal length
        length += len(data)
        _raise_if_beyond(length, maximum=0xffffffff, exception_class=CompressedSizeOverflowError)
        if data:
            await writer.write(data)

    while index < size:
        chunk = await reader.read(index, min(chunk_size, size - index))
        if not chunk:
            break
        index += len(chunk)
        _raise_if_beyond(index, maximum=0xffffffff, exception_class=UncompressedSizeOverflowError)

        await _write(await asyncio.to_thread(codec.append, chunk))

        if on_progress is not None:
            progress = on_progress(index, size)
            if inspect.isawaitable(progress):
                await progress

    data, signature = await asyncio.to_thread(codec.flush)
    await _write(data)

    return _Result(length, index, signature)


# Entry encoding

class ZipEntry:
    """One member of the archive

    header is the 26 bytes shared by the local file header and the
    central directory record: they both read it, neither recomputes it
    """

    def __init__(self, name, filename, directory, header, comment, extra_field):
        self.name = name
        self.filename = filename
        self.directory = directory
        self.header = header
        self.comment = comment
        self.extra_field = extra_field
        self.length = 0
        self.offset = None

    def __repr__(self):
        return f'<ZipEntry name={self.name!r} offset={self.offset} length={self.length}>'


async def _create_entry(name, reader, writer, chunk_size, get_crypto_random,
                        directory, password, level, comment, extra_field, last_mod_date,
                        version, on_progress):
    filename = name.encode('utf-8')
    _raise_if_beyond(len(filename), maximum=0xffff, exception_class=NameLengthOverflowError)

    comment = _to_bytes(comment)
    _raise_if_beyond(len(comment), maximum=0xffff, exception_class=CommentTooLargeError)

    password = _to_bytes(password) if password else b''
    encrypted = bool(password)
    compressed = level != 0 and not directory

    if encrypted:
        extra_field = bytearray(_aes_extra)
        if compressed:
            extra_field[_aes_extra_compression_index] = 8
        extra_field = bytes(extra_field)
        entry_version, flags, compression = 51, _encrypted_flags, 99
    else:
        extra_field = _to_bytes(extra_field)
        entry_version, flags, compression = version or 20, _plain_flags, 8 if compressed else 0
    _raise_if_beyond(len(extra_field), maximum=0xffff, exception_class=ExtraFieldLengthOverflowError)

    mod_at_time, mod_at_date = _dos_date_time(last_mod_date or datetime.now())

    header = bytearray(_header_struct.size)
    _header_struct.pack_into(
        header, 0,
        entry_version,
        flags,
        compression,
        mod_at_time,
        mod_at_date,
        0,  # CRC32 - patched after the data
        0,  # Compressed size - patched after the data
        0,  # Uncompressed size - patched after the data
        len(filename),
        len(extra_field),
    )
    entry = ZipEntry(name, filename, directory, header, comment, extra_field)

    crc_32, compressed_size, uncompressed_size = 0, 0, 0
    if reader is not None:
        await reader.init()
    try:
        if reader is not None:
            # Sizes known up front are checked before anything is written
            _raise_if_beyond(reader.size, maximum=0xffffffff, exception_class=UncompressedSizeOverflowError)
            if not compressed:
                _raise_if_beyond(
                    reader.size + (_Codec.encryption_size_increase if encrypted else 0),
                    maximum=0xffffffff, exception_class=CompressedSizeOverflowError,
                )

        local_header = _local_header_signature + bytes(header) + filename + extra_field
        await writer.write(local_header)

        if reader is not None:
            codec = _Codec(level, password, not encrypted, compressed, encrypted, get_crypto_random)
            result = await _process_data(codec, reader, writer, reader.size, chunk_size, on_progress)
            if not encrypted and result.signature is not None:
                crc_32 = result.signature
            compressed_size = result.length
            uncompressed_size = result.size
    finally:
        if reader is not None:
            await reader.close()
    _header_sizes_struct.pack_into(header, 10, crc_32, compressed_size, uncompressed_size)

    footer = _data_descriptor_struct.pack(_data_descriptor_signature, crc_32, compressed_size, uncompressed_size)
    await writer.write(footer)

    entry.length = len(local_header) + compressed_size + len(footer)
    return entry


# Archive

class ZipWriter:
    """Builds a ZIP archive entry by entry onto a Writer

    Entries are committed to the writer one at a time: an add that writes
    straight to the writer holds it for the whole entry, and a buffered
    add only holds it to append its already encoded bytes. close must only
    be called once every add has returned
    """

    def __init__(self, writer, chunk_size=65536, level=9,
                 get_crypto_random=lambda num_bytes: secrets.token_bytes(num_bytes),
    ):
        self.writer = writer
        self.chunk_size = chunk_size
        self.level = level
        self.get_crypto_random = get_crypto_random
        self.entries = {}
        self.offset = 0
        self.closed = False
        self._lock = asyncio.Lock()

    async def _init_writer(self):
        if not self.writer.initialized:
            await self.writer.init()

    def _raise_if_offset_beyond(self, entry):
        _raise_if_beyond(self.offset + entry.length, maximum=0xffffffff, exception_class=OffsetOverflowError)

    def _commit(self, name, entry):
        # Re-inserted so the order of entries is the order they were written
        del self.entries[name]
        entry.offset = self.offset
        self.entries[name] = entry
        self.offset += entry.length

        __log__.debug('Added %s at offset %d (%d bytes)', name, entry.offset, entry.length)

    async def add(self, name, reader=None, directory=False, password=None, level=None,
                  comment='', extra_field=b'', last_mod_date=None, version=None,
                  on_progress=None, buffered_write=False):
        if self.closed:
            raise InvalidStateError('Cannot add entries to a closed archive')

        name = name.strip()
        if not name:
            raise EmptyNameError()
        if directory and not name.endswith('/'):
            name += '/'
        if name in self.entries:
            raise DuplicateNameError(name)
        self.entries[name] = _PENDING

        def create_entry(writer):
            return _create_entry(
                name, reader, writer, self.chunk_size, self.get_crypto_random,
                directory, password, self.level if level is None else level,
                comment, extra_field, last_mod_date, version, on_progress,
            )

        try:
            if buffered_write:
                buffer = BytesWriter()
                await buffer.init()
                entry = await create_entry(buffer)
                async with self._lock:
                    self._raise_if_offset_beyond(entry)
                    await self._init_writer()
                    await self.writer.write(await buffer.get_data())
                    self._commit(name, entry)
            else:
                async with self._lock:
                    await self._init_writer()
                    entry = await create_entry(self.writer)
                    self._raise_if_offset_beyond(entry)
                    self._commit(name, entry)
        except BaseException:
            del self.entries[name]
            raise

        return entry

    async def close(self, comment=None):
        if self.closed:
            raise InvalidStateError('Archive is already closed')

        async with self._lock:
            # Another close may have finished while this one waited for the lock
            if self.closed:
                raise InvalidStateError('Archive is already closed')

            entries = list(self.entries.values())
            if any(entry is _PENDING for entry in entries):
                raise InvalidStateError('Cannot close while entries are being added')

            comment = _to_bytes(comment) if comment else b''
            _raise_if_beyond(len(comment), maximum=0xffff, exception_class=CommentTooLargeError)
            _raise_if_beyond(len(entries), maximum=0xffff, exception_class=CentralDirectoryNumberOfEntriesOverflowError)

            central_directory_size = sum(
                _central_directory_header_struct.size + len(entry.filename) + len(entry.comment) + len(entry.extra_field)
                for entry in entries
            )
            _raise_if_beyond(central_directory_size, maximum=0xffffffff, exception_class=CentralDirectorySizeOverflowError)

            self.closed = True
            await self._init_writer()

            central_directory = bytearray(central_directory_size + _end_of_central_directory_struct.size)
            position = 0
            for entry in entries:
                _central_directory_header_struct.pack_into(
                    central_directory, position,
                    _central_directory_header_signature,
                    20,                                 # Version made by (MS-DOS)
                    bytes(entry.header),
                    len(entry.comment),
                    0,                                  # Disk number
                    0,                                  # Internal file attributes
                    0x10 if entry.directory else 0x0,   # MS-DOS directory
                    entry.offset,
                )
                position += _central_directory_header_struct.size
                for field in (entry.filename, entry.extra_field, entry.comment):
                    central_directory[position:position + len(field)] = field
                    position += len(field)

            _end_of_central_directory_struct.pack_into(
                central_directory, position,
                _end_of_central_directory_signature,
                0,                       # Disk number
                0,                       # Disk number with central directory
                len(entries),            # On this disk
                len(entries),            # In total
                central_directory_size,
                self.offset,
                len(comment),
            )
            central_directory += comment

            await self.writer.write(bytes(central_directory))
            __log__.debug(
                'Closed archive with %d entries, central directory of %d bytes at offset %d',
                len(entries), central_directory_size, self.offset,
            )

        return await self.writer.get_data()


class ZipError(Exception):
    pass


class InvalidStateError(ZipError):
    pass


class ZipValueError(ZipError, ValueError):
    pass


class EmptyNameError(ZipValueError):
    pass


class DuplicateNameError(ZipValueError):
    pass


class ZipOverflowError(ZipValueError, OverflowError):
    pass


class CommentTooLargeError(ZipOverflowError):
    pass


class NameLengthOverflowError(ZipOverflowError):
    pass


class ExtraFieldLengthOverflowError(ZipOverflowError):
    pass


class UncompressedSizeOverflowError(ZipOverflowError):
    pass


class CompressedSizeOverflowError(ZipOverflowError):
    pass


class OffsetOverflowError(ZipOverflowError):
    pass


class CentralDirectorySizeOverflowError(ZipOverflowError):
    pass


class CentralDirectoryNumberOfEntriesOverflowError(ZipOverflowError):
    pass
