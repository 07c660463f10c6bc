'''
commoniface.py

Common entities used by all storage interfaces of the WOPI host:
the standard error messages and the contract of a file handle.
'''

import os

# standard file missing message
ENOENT_MSG = 'No such file or directory'

# standard error thrown when attempting to create a file that already exists
EXCL_ERROR = 'File exists but EXCL mode requested'

# standard error thrown when attempting an operation without the required access rights
ACCESS_ERROR = 'Operation not permitted'


def isdenial(e):
    '''True if the given storage error means that the file is missing or not accessible,
    as opposed to any other (unexpected) failure'''
    return str(e) in (ENOENT_MSG, ACCESS_ERROR)


def encodefileid(filepath):
    '''Encodes a storage path to be used as a fileid. The hex form is URL safe and never contains `_`,
    which is the separator of the document ids used by the WOPI clients.'''
    return filepath.encode().hex()


def decodefileid(fileid):
    '''Decodes a fileid obtained from encodefileid(). Raises IOError if the fileid is malformed'''
    try:
        return bytes.fromhex(fileid).decode()
    except (ValueError, UnicodeDecodeError):
        raise IOError(ENOENT_MSG)


class FileHandle:
    '''A capability to stat, read and write one file, as returned by `getfilehandle()` of the storage interfaces.
    Handles are only valid within a single request and must not be cached.'''

    def __init__(self, fileid, filepath):
        self.fileid = fileid
        self.path = filepath

    @property
    def name(self):
        return os.path.basename(self.path)

    @property
    def size(self):
        raise NotImplementedError

    @property
    def mtime(self):
        '''The modification time in seconds since the epoch'''
        raise NotImplementedError

    def isparentcreatable(self):
        '''True if new files can be created in the folder containing this file'''
        raise NotImplementedError

    def read(self):
        '''Generator of the file's content in chunks. In case of errors, an IOError is yielded
        instead of the file's contents, and the generator ends'''
        raise NotImplementedError

    def putcontent(self, stream):
        '''Overwrite the file with the content of the given stream'''
        raise NotImplementedError
