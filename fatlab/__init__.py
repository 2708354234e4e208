'''
fatlab - FAT32 image parsers and tools.
'''
__version__ = (0, 1, 0)
