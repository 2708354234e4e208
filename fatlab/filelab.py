import logging

from fatlab.common import *

logger = logging.getLogger(__name__)

class FileLab(OnDemand):
    '''
    Base class for disk image parsers.

    The FileLab class provides routines to help image parsers
    with concepts like API caching, on-demand parsing and
    positioned reads/writes against a single open file object.

    Example:

        class FooLab(FileLab):

            def __init__(self, fd, off=0):
                FileLab.__init__(self, fd, off=off)

                self.add('bpb', self._getBpb )

            def _getBpb(self):
                return self.getStruct(0, BIOS_PARAMETER_BLOCK_FAT32)

        foo = FooLab(fd)
        print(foo['bpb'].BPB_BytsPerSec)

    Notes:

        * all offsets are relative to the "off" the lab was created with

    '''
    def __init__(self, fd, off=0):
        OnDemand.__init__(self)
        self.fd = fd
        self.off = off

    def getStruct(self, off, cls, *args, size=None, **kwargs):
        '''
        Construct a VStruct and parse it from the file offset.

        Example:

            class Foo(VStruct):
                # ...

            foo = lab.getStruct(0, Foo, size=32)

        Notes:

            * if off is unspecified, the current file offset is used
            * if size is unspecified, the emitted size of a fresh
              instance is used
            * short reads are zero padded, so parsing never fails on
              a truncated image (you get zeros instead)

        '''
        if off == None:
            off = self.fd.tell() - self.off

        obj = cls(*args,**kwargs)
        if size == None:
            size = len(obj.vsEmit())

        byts = self.readAtOff(off, size, shortok=True)
        obj.vsParse( byts.ljust(size, b'\x00') )
        return obj

    def readAtOff(self, off, size, shortok=False):
        if off < 0:
            # garbage geometry or chains may land before the image start
            logger.debug('filelab: read before start: off: %d size: %d', off, size)
            if not shortok:
                raise Exception('readAtOff(%d,%d) negative offset' % (off,size))
            return b''

        self.fd.seek(self.off + off)
        byts = self.fd.read(size)
        if len(byts) != size and not shortok:
            raise Exception('readAtOff(%d,%d) short: %d' % (off,size,len(byts)))
        return byts

    def writeAtOff(self, off, byts):
        '''
        Write bytes at the file offset and flush them to the image.
        '''
        if off < 0:
            raise Exception('writeAtOff(%d,%d) negative offset' % (off,len(byts)))

        self.fd.seek(self.off + off)
        self.fd.write(byts)
        self.fd.flush()
