import os
import shutil
import tempfile
import unittest
import contextlib

import vstruct2.types as v_types

import fatlab.formats.fat32 as fat32

# geometry of the synthetic test image
SECTOR_SIZE = 512
SECTORS_PER_CLUSTER = 1
RESERVED_SECTORS = 32
NUM_FATS = 2
FAT_SIZE = 1017
ROOT_CLUSTER = 2
SUBDIR_CLUSTER = 6

FAT_OFFSET = SECTOR_SIZE * RESERVED_SECTORS
DATA_OFFSET = FAT_OFFSET + NUM_FATS * FAT_SIZE * SECTOR_SIZE
TOTAL_CLUSTERS = 16
IMAGE_SIZE = DATA_OFFSET + (TOTAL_CLUSTERS - 2) * SECTOR_SIZE

EOC = 0x0FFFFFF8

FOO_DATA = bytes([ (i * 7) & 0xFF for i in range(600) ])
BAR_DATA = b'hello world!'
README_DATA = b'R' * SECTOR_SIZE
OLD_DATA = b'old!!'
BIG_DATA = bytes([ (i * 13 + 5) & 0xFF for i in range(1300) ])
NESTED_DATA = b'nested file content!'

# slack after the end of file content, so over-reads are recognizable
FOO_SLACK = b'\xAA'
BAR_SLACK = b'\xBB'

ROOT_VISIBLE = ['FOO.TXT', 'BAR.TXT', 'SUBDIR', 'README.TXT', 'BIG.BIN', 'EMPTY.TXT']
SUBDIR_VISIBLE = ['.', '..', 'NESTED.TXT']

class DisTest(unittest.TestCase):

    def eq(self, x, y):
        self.assertEqual(x,y)

    def ne(self, x, y):
        self.assertNotEqual(x,y)

    def nn(self, x):
        self.assertIsNotNone(x)

    def true(self, x):
        self.assertTrue(x)

    def false(self, x):
        self.assertFalse(x)

def make_bpb():
    bpb = fat32.BIOS_PARAMETER_BLOCK_FAT32()

    # explicit initialization of buffers
    bpb.BPB_jmpBoot = b'\xEB\x58\x90'
    bpb.BPB_OEMName = b'mkfs.fat'
    bpb.BPB_Reserved = b'\x00' * 12
    bpb.BPB_VolLab = b'TESTVOL    '
    bpb.BPB_FilSysType = b'FAT32   '
    bpb.BPB_BootCode = b'\x00' * 420

    bpb.BPB_BytsPerSec = SECTOR_SIZE
    bpb.BPB_SecPerClus = SECTORS_PER_CLUSTER
    bpb.BPB_RsvdSecCnt = RESERVED_SECTORS
    bpb.BPB_NumFATs = NUM_FATS
    bpb.BPB_RootEntCnt = 0
    bpb.BPB_Media = 248
    bpb.BPB_TotSec32 = IMAGE_SIZE // SECTOR_SIZE
    bpb.BPB_FATSz32 = FAT_SIZE
    bpb.BPB_RootClus = ROOT_CLUSTER
    bpb.BPB_FSInfo = 1
    bpb.BPB_BkBootSec = 6
    bpb.BPB_DrvNum = 128
    bpb.BPB_BootSig = 41
    bpb.BPB_VolID = 4107516940
    bpb.EndOfSectorMarker = 0xAA55
    return bpb

def make_entry(name, attr, cluster, size, high=0):
    entry = fat32.DIRECTORY_ENTRY()

    # explicit initialization of buffers
    entry.DIR_Name = name
    entry.DIR_NTRes = b'\x00'
    entry.DIR_CrtTimeTenth = b'\x00'
    entry.DIR_CrtTime = b'\x00' * 2
    entry.DIR_CrtDate = b'\x00' * 2
    entry.DIR_LstAccDate = b'\x00' * 2
    entry.DIR_WrtTime = b'\x00' * 2
    entry.DIR_WrtDate = b'\x00' * 2

    entry.DIR_Attr = attr
    entry.DIR_FstClusHI = high
    entry.DIR_FstClusLO = cluster
    entry.DIR_FileSize = size
    return entry

def make_directory(entries):
    data = b''.join([ make_entry(*e).vsEmit() for e in entries ])
    return data.ljust(SECTOR_SIZE, b'\x00')

def make_fat(chains):
    fat = v_types.VArray(fields=[ v_types.uint32() for _ in range(TOTAL_CLUSTERS) ])
    fat[0] = 0x0FFFFFF8
    fat[1] = 0x0FFFFFFF
    for chain in chains:
        for cur, nxt in zip(chain, chain[1:] + [EOC]):
            fat[cur] = nxt
    return fat.vsEmit()

def cluster_offset(cluster):
    return DATA_OFFSET + (cluster - 2) * SECTOR_SIZE

def build_image(path):
    '''
    Write the synthetic FAT32 test image:

        cluster 2       root directory
        cluster 3,4     FOO.TXT (600 bytes)
        cluster 5       BAR.TXT (12 bytes)
        cluster 6       SUBDIR
        cluster 7       README.TXT (read-only, exactly one cluster)
        cluster 8       OLD.TXT (deleted before the image was opened)
        cluster 9       SUBDIR/NESTED.TXT
        cluster 10,12,11 BIG.BIN (1300 bytes, out of order chain)
    '''
    root = make_directory([
        (b'TESTVOL    ', 0x08, 0, 0),
        (b'FOO     TXT', 0x20, 3, len(FOO_DATA)),
        (b'BAR     TXT', 0x20, 5, len(BAR_DATA)),
        (b'SUBDIR     ', 0x10, SUBDIR_CLUSTER, 0),
        (b'README  TXT', 0x01, 7, len(README_DATA)),
        (b'\xE5OLD    TXT', 0x20, 8, len(OLD_DATA)),
        (b'HIDDEN  SYS', 0x06, 0, 0),
        (b'BIG     BIN', 0x20, 10, len(BIG_DATA)),
        (b'EMPTY   TXT', 0x20, 0, 0),
    ])

    subdir = make_directory([
        (b'.          ', 0x10, SUBDIR_CLUSTER, 0),
        (b'..         ', 0x10, 0, 0),
        (b'NESTED  TXT', 0x20, 9, len(NESTED_DATA)),
    ])

    fat = make_fat([ [2], [3, 4], [5], [6], [7], [8], [9], [10, 12, 11] ])

    clusters = {
        2: root,
        3: FOO_DATA[:SECTOR_SIZE],
        4: FOO_DATA[SECTOR_SIZE:].ljust(SECTOR_SIZE, FOO_SLACK),
        5: BAR_DATA.ljust(SECTOR_SIZE, BAR_SLACK),
        6: subdir,
        7: README_DATA,
        8: OLD_DATA.ljust(SECTOR_SIZE, b'\x00'),
        9: NESTED_DATA.ljust(SECTOR_SIZE, b'\x00'),
        10: BIG_DATA[:512],
        12: BIG_DATA[512:1024],
        11: BIG_DATA[1024:].ljust(SECTOR_SIZE, b'\x00'),
    }

    with open(path, 'wb') as f:
        f.write(b'\x00' * IMAGE_SIZE)

        f.seek(0)
        f.write(make_bpb().vsEmit())

        for i in range(NUM_FATS):
            f.seek(FAT_OFFSET + i * FAT_SIZE * SECTOR_SIZE)
            f.write(fat)

        for cluster, data in clusters.items():
            f.seek(cluster_offset(cluster))
            f.write(data)

def read_image(path, off, size):
    with open(path, 'rb') as f:
        f.seek(off)
        return f.read(size)

@contextlib.contextmanager
def temp_image():
    tmpdir = tempfile.mkdtemp()
    path = os.path.join(tmpdir, 'test.img')
    build_image(path)

    try:
        yield path

    finally:
        shutil.rmtree(tmpdir)

@contextlib.contextmanager
def temp_fat32_image(**opts):
    with temp_image() as path:
        with open(path, 'r+b') as fd:
            yield fat32.Fat32Image(fd, **opts)
