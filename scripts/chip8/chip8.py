# CHIP-8 INFO
# https://chip-8.github.io/extensions/#chip-8
# https://chip-8.github.io/links/
#
# COWGOD'S TECHNICAL REFERENCE
# http://devernay.free.fr/hacks/chip8/C8TECH10.HTM
#
# TEST SUITE
# https://github.com/Timendus/chip8-test-suite
#
# This module only holds the machine itself (memory, registers, stack, timers,
# keypad, display buffer and the fetch-decode-execute cycle).
# Window, keyboard and audio live in chip8_frontend.py


import os
import random
from collections import namedtuple
from enum import Enum, auto
from functools import wraps


# ******************** STATIC SECTION
C8_FONTS = [0xF0, 0x90, 0x90, 0x90, 0xF0,  # 0
            0x20, 0x60, 0x20, 0x20, 0x70,  # 1
            0xF0, 0x10, 0xF0, 0x80, 0xF0,  # 2
            0xF0, 0x10, 0xF0, 0x10, 0xF0,  # 3
            0x90, 0x90, 0xF0, 0x10, 0x10,  # 4
            0xF0, 0x80, 0xF0, 0x10, 0xF0,  # 5
            0xF0, 0x80, 0xF0, 0x90, 0xF0,  # 6
            0xF0, 0x10, 0x20, 0x40, 0x40,  # 7
            0xF0, 0x90, 0xF0, 0x90, 0xF0,  # 8
            0xF0, 0x90, 0xF0, 0x10, 0xF0,  # 9
            0xF0, 0x90, 0xF0, 0x90, 0x90,  # A
            0xE0, 0x90, 0xE0, 0x90, 0xE0,  # B
            0xF0, 0x80, 0x80, 0x80, 0xF0,  # C
            0xE0, 0x90, 0x90, 0x90, 0xE0,  # D
            0xF0, 0x80, 0xF0, 0x80, 0xF0,  # E
            0xF0, 0x80, 0xF0, 0x80, 0x80]  # F

FONT_START_ADDRESS = 0x000
FONT_SPRITE_SIZE = 5            # each character font is made of 5 bytes
MEMORY_SIZE = 4096
ADDRESS_MASK = 0x0FFF
ROM_START_ADDRESS = 0x200
MAX_ROM_SIZE = MEMORY_SIZE - ROM_START_ADDRESS
STACK_SIZE = 16
REGISTERS = 16
KEYS = 16
SPRITE_WIDTH = 8
SCREEN_HEIGHT = 32
SCREEN_WIDTH = 64
CYCLES_PER_FRAME = 10
FRAMES_PER_SECOND = 60
DEBUG = True if int(os.getenv('DEBUG', 0)) >= 1 else False


# ******************** ERRORS SECTION
class Chip8Error(Exception):
    pass

class StackOverflowError(Chip8Error):
    pass

class StackUnderflowError(Chip8Error):
    pass

class RomTooLargeError(Chip8Error):
    pass


# ******************** UTILITIES SECTION
def asm(msg):
    """decorator to print out the ASM of the instruction being executed"""
    def decorator(fn):
        @wraps(fn)
        def wrapper_fn(*args, **kwargs):
            if DEBUG:
                chip, instruction = args[0], args[1]
                mem_addr = (chip.pc - 0x2) & 0xFFFF     # pc has already been moved past the instruction
                print(f"mem_addr: 0x{mem_addr:04x}    instruction: " + msg.format(**instruction._asdict()))
            return fn(*args, **kwargs)
        return wrapper_fn
    return decorator


# ******************** MEMORY SECTION
# ********** WRAPS A LIST TO REPRESENT A STACK WITH A LIMITED SIZE OF 16 ADDRESSES
class Stack:
    def __init__(self, capacity=STACK_SIZE):
        self.capacity = capacity
        self.addr_list = [0] * capacity
        self.size = 0       # stack pointer, index of the first free slot

    def __len__(self):
        return self.size

    def __repr__(self):
        return f"Stack({[hex(a) for a in self.addr_list[:self.size]]})"

    def append(self, address):
        if self.size >= self.capacity:
            raise StackOverflowError(f"The CHIP-8 stack can contain at most {self.capacity} addresses. Limit exceeded")
        self.addr_list[self.size] = address
        self.size += 1

    def pop(self):
        if self.size == 0:
            raise StackUnderflowError("Return with no active subroutine call")
        self.size -= 1
        return self.addr_list[self.size]

# ********** WRAPS A BYTEARRAY TO REPRESENT THE MAIN MEMORY WITH A LIMITED SIZE OF 4KB
class Memory:
    def __init__(self):
        self.inner = bytearray(MEMORY_SIZE)
        self.inner[FONT_START_ADDRESS:FONT_START_ADDRESS+len(C8_FONTS)] = bytes(C8_FONTS)

    @staticmethod
    def _wrap(address):
        """keep only the lowest 12 bits of the address, a ROM reaching past 0xFFF is malformed"""
        if address > ADDRESS_MASK and DEBUG:
            print(f"memory access out of range at 0x{address:04x}, wrapped to 0x{address & ADDRESS_MASK:03x}")
        return address & ADDRESS_MASK

    def __setitem__(self, address, value):
        self.inner[self._wrap(address)] = value & 0xFF

    def __getitem__(self, address):
        return self.inner[self._wrap(address)]

    def load_rom(self, rom):
        """copy the ROM bytes in memory starting at the entry point"""
        if len(rom) > MAX_ROM_SIZE:
            raise RomTooLargeError(f"ROM is {len(rom)} bytes long, at most {MAX_ROM_SIZE} bytes fit in memory")
        self.inner[ROM_START_ADDRESS:ROM_START_ADDRESS+len(rom)] = bytes(rom)
        if DEBUG: print(f"{len(rom)} bytes of ROM loaded at 0x{ROM_START_ADDRESS:03x}")


# ******************** DEVICES SECTION
class Display:
    """64x32 buffer of pixels, one byte per cell, row-major with the origin top-left"""

    def __init__(self, w=SCREEN_WIDTH, h=SCREEN_HEIGHT):
        self.w, self.h = w, h
        self.buffer = bytearray(w * h)
        self.dirty = False      # tells the renderer something changed since the last refresh

    def __repr__(self):
        return f"Display({self.w}x{self.h}, lit={sum(self.buffer)}, dirty={self.dirty})"

    def pixel(self, x, y):
        """return 1 if pixel is ON, return 0 if pixel is OFF"""
        return self.buffer[y * self.w + x]

    def rows(self):
        return [bytes(self.buffer[y * self.w:(y + 1) * self.w]) for y in range(self.h)]

    def clear(self):
        self.buffer[:] = bytes(self.w * self.h)
        self.dirty = True

    def draw_sprite(self, x, y, sprite):
        """
        XOR the sprite rows onto the buffer with the top-left corner at (x, y)
        the origin wraps around the screen but the sprite itself is clipped at the edges
        return True if any ON pixel got turned OFF
        """
        x, y = x % self.w, y % self.h
        collision = False
        for row, sprite_byte in enumerate(sprite):
            y_coordinate = y + row
            if y_coordinate >= self.h:
                break
            for col in range(SPRITE_WIDTH):
                x_coordinate = x + col
                if x_coordinate >= self.w:
                    break
                if sprite_byte & (0x80 >> col):
                    index = y_coordinate * self.w + x_coordinate
                    if self.buffer[index] == 1:
                        collision = True
                    self.buffer[index] ^= 1
        self.dirty = True
        return collision

    def take_dirty(self):
        """return the dirty flag and reset it, meant to be called once per rendered frame"""
        dirty, self.dirty = self.dirty, False
        return dirty

class Timers:
    def __init__(self):
        self.delay = 0      # delay timer, active when non-zero
        self.sound = 0      # sound timer, the buzzer sounds while non-zero

    def __repr__(self):
        return f"Timers(delay={self.delay}, sound={self.sound})"

    def tick(self):
        """count both timers down by one, they never go below zero"""
        if self.delay > 0:
            self.delay -= 1
        if self.sound > 0:
            self.sound -= 1

class Keypad:
    """state of the 16 hex keys, written by the keyboard and only read by the CPU"""

    def __init__(self):
        self.keys = bytearray(KEYS)

    def __repr__(self):
        return f"Keypad(pressed={[hex(k) for k in range(KEYS) if self.keys[k]]})"

    def __getitem__(self, key):
        """keys past 0xF don't exist and are never pressed"""
        return key < KEYS and self.keys[key] == 1

    def press(self, key):
        self.keys[key & 0xF] = 1

    def release(self, key):
        self.keys[key & 0xF] = 0

    def untouched(self):
        return not any(self.keys)

    def first(self):
        """get the lowest numbered key being pressed, None if there's none"""
        for key in range(KEYS):
            if self.keys[key]:
                return key
        return None


# ******************** DECODER SECTION
class Op(Enum):
    CLS = auto()
    RET = auto()
    JP = auto()
    CALL = auto()
    SE_BYTE = auto()
    SNE_BYTE = auto()
    SE_REG = auto()
    LD_BYTE = auto()
    ADD_BYTE = auto()
    LD_REG = auto()
    OR = auto()
    AND = auto()
    XOR = auto()
    ADD_REG = auto()
    SUB = auto()
    SHR = auto()
    SUBN = auto()
    SHL = auto()
    SNE_REG = auto()
    LD_I = auto()
    JP_V0 = auto()
    RND = auto()
    DRW = auto()
    SKP = auto()
    SKNP = auto()
    LD_VX_DT = auto()
    LD_VX_K = auto()
    LD_DT_VX = auto()
    LD_ST_VX = auto()
    ADD_I = auto()
    LD_F = auto()
    LD_B = auto()
    LD_MEM_VX = auto()
    LD_VX_MEM = auto()
    UNKNOWN = auto()

Instruction = namedtuple("Instruction", ["op", "opcode", "x", "y", "n", "nn", "nnn"])

# WATCH OUT: masks order is important!!!
# the lookup stops at the first mask whose masked opcode is listed
OPCODE_MASKS = [
    (0xFFFF, {0x00E0: Op.CLS, 0x00EE: Op.RET}),
    (0xF0FF, {0xE09E: Op.SKP, 0xE0A1: Op.SKNP,
              0xF007: Op.LD_VX_DT, 0xF00A: Op.LD_VX_K, 0xF015: Op.LD_DT_VX, 0xF018: Op.LD_ST_VX,
              0xF01E: Op.ADD_I, 0xF029: Op.LD_F, 0xF033: Op.LD_B, 0xF055: Op.LD_MEM_VX, 0xF065: Op.LD_VX_MEM}),
    (0xF00F, {0x5000: Op.SE_REG, 0x9000: Op.SNE_REG,
              0x8000: Op.LD_REG, 0x8001: Op.OR, 0x8002: Op.AND, 0x8003: Op.XOR, 0x8004: Op.ADD_REG,
              0x8005: Op.SUB, 0x8006: Op.SHR, 0x8007: Op.SUBN, 0x800E: Op.SHL}),
    (0xF000, {0x1000: Op.JP, 0x2000: Op.CALL, 0x3000: Op.SE_BYTE, 0x4000: Op.SNE_BYTE,
              0x6000: Op.LD_BYTE, 0x7000: Op.ADD_BYTE, 0xA000: Op.LD_I, 0xB000: Op.JP_V0,
              0xC000: Op.RND, 0xD000: Op.DRW}),
]

def decode(opcode):
    """split the opcode in its fields and find out which instruction it encodes"""
    op = Op.UNKNOWN
    for mask, ops in OPCODE_MASKS:
        if (opcode & mask) in ops:
            op = ops[opcode & mask]
            break
    return Instruction(
        op=op,
        opcode=opcode,
        x=(opcode & 0x0F00) >> 8,
        y=(opcode & 0x00F0) >> 4,
        n=opcode & 0x000F,
        nn=opcode & 0x00FF,
        nnn=opcode & 0x0FFF,
    )


# ******************** CPU SECTION
class Chip8:
    def __init__(self, stack_size=STACK_SIZE):
        self.stack_size = stack_size
        self.reset()
        self.instructions = {
            Op.CLS: self._clear_screen,
            Op.RET: self._return,
            Op.JP: self._jump,
            Op.CALL: self._call_addr,
            Op.SE_BYTE: self._skip_if_eq,
            Op.SNE_BYTE: self._skip_if_not_eq,
            Op.SE_REG: self._skip_if_eq_regs,
            Op.LD_BYTE: self._set_vx,
            Op.ADD_BYTE: self._add_to_vx,
            Op.LD_REG: self._set_vx_to_vy,
            Op.OR: self._set_vx_or_vy,
            Op.AND: self._set_vx_and_vy,
            Op.XOR: self._set_vx_xor_vy,
            Op.ADD_REG: self._add_vx_vy,
            Op.SUB: self._sub_vx_vy,
            Op.SHR: self._shr,
            Op.SUBN: self._subn_vx_vy,
            Op.SHL: self._shl,
            Op.SNE_REG: self._skip_if_not_eq_regs,
            Op.LD_I: self._set_idx,
            Op.JP_V0: self._jump_plus,
            Op.RND: self._random_byte_and,
            Op.DRW: self._to_screen,
            Op.SKP: self._skip_if_pressed,
            Op.SKNP: self._skip_if_not_pressed,
            Op.LD_VX_DT: self._set_vx_dt,
            Op.LD_VX_K: self._wait_keypress,
            Op.LD_DT_VX: self._set_dt_vx,
            Op.LD_ST_VX: self._set_st,
            Op.ADD_I: self._add_to_idx,
            Op.LD_F: self._select_char,
            Op.LD_B: self._bcd_repr,
            Op.LD_MEM_VX: self._store_vregs,
            Op.LD_VX_MEM: self._load_vregs,
            Op.UNKNOWN: self._unknown,
        }

    def reset(self):
        """bring the machine back to its power-on state, the loaded ROM is wiped out too"""
        self.mem = Memory()
        self.stack = Stack(self.stack_size)
        self.v_regs = bytearray(REGISTERS)
        self.pc = ROM_START_ADDRESS
        self.idx = 0    # specify where the sprites reside in memory
        self.timers = Timers()
        self.display = Display()
        self.keypad = Keypad()
        self.awaiting_key = None    # register waiting for a keypress (FX0A), None when running
        self.opcode = 0             # last fetched opcode, handy in crash reports

    def __str__(self):
        registers = f"PC_REGISTER:0x{self.pc:04x} | IDX_REGISTER:0x{self.idx:04x} | VARIABLE_REGISTERS:{list(self.v_regs)}"
        stack = f"STACK:{self.stack}"
        devices = f"{self.timers} | {self.keypad} | {self.display}"
        flags = f"LAST_OPCODE: 0x{self.opcode:04x} | AWAITING_KEY: {self.awaiting_key}"
        return f"{registers}\n{stack}\n{devices}\n{flags}"

    @property
    def beeping(self):
        return self.timers.sound > 0

    def load_rom(self, rom):
        self.mem.load_rom(rom)

    @asm("CLS")
    def _clear_screen(self, ins):
        self.display.clear()

    @asm("RET")
    def _return(self, ins):
        """return from a subroutine"""
        self.pc = self.stack.pop()

    @asm("JP 0x{nnn:04x}")
    def _jump(self, ins):
        self.pc = ins.nnn

    @asm("CALL 0x{nnn:04x}")
    def _call_addr(self, ins):
        self.stack.append(self.pc)
        self.pc = ins.nnn

    @asm("SE V{x}, {nn}")
    def _skip_if_eq(self, ins):
        if self.v_regs[ins.x] == ins.nn:
            self._goto_next_instruction()

    @asm("SNE V{x}, {nn}")
    def _skip_if_not_eq(self, ins):
        if self.v_regs[ins.x] != ins.nn:
            self._goto_next_instruction()

    @asm("SE V{x}, V{y}")
    def _skip_if_eq_regs(self, ins):
        if self.v_regs[ins.x] == self.v_regs[ins.y]:
            self._goto_next_instruction()

    @asm("SNE V{x}, V{y}")
    def _skip_if_not_eq_regs(self, ins):
        if self.v_regs[ins.x] != self.v_regs[ins.y]:
            self._goto_next_instruction()

    @asm("LD V{x}, {nn}")
    def _set_vx(self, ins):
        """set the value of one of the 16 variable registers, Vx"""
        self.v_regs[ins.x] = ins.nn

    @asm("ADD V{x}, {nn}")
    def _add_to_vx(self, ins):
        """add to the value already present in one of the variable registers, VF is left alone"""
        self.v_regs[ins.x] = (self.v_regs[ins.x] + ins.nn) & 0xFF

    @asm("LD V{x}, V{y}")
    def _set_vx_to_vy(self, ins):
        self.v_regs[ins.x] = self.v_regs[ins.y]

    @asm("OR V{x}, V{y}")
    def _set_vx_or_vy(self, ins):
        self.v_regs[ins.x] |= self.v_regs[ins.y]

    @asm("AND V{x}, V{y}")
    def _set_vx_and_vy(self, ins):
        self.v_regs[ins.x] &= self.v_regs[ins.y]

    @asm("XOR V{x}, V{y}")
    def _set_vx_xor_vy(self, ins):
        self.v_regs[ins.x] ^= self.v_regs[ins.y]

    # the flag is always written after the result, so VF holds the flag when x is 0xF
    @asm("ADD V{x}, V{y}")
    def _add_vx_vy(self, ins):
        """set Vx = Vx + Vy, VF = carry"""
        total = self.v_regs[ins.x] + self.v_regs[ins.y]
        self.v_regs[ins.x] = total & 0xFF     # keep only the lowest 8 bits
        self.v_regs[0xF] = 1 if total > 0xFF else 0

    @asm("SUB V{x}, V{y}")
    def _sub_vx_vy(self, ins):
        """set Vx = Vx - Vy, VF = NOT borrow"""
        vx, vy = self.v_regs[ins.x], self.v_regs[ins.y]
        self.v_regs[ins.x] = (vx - vy) & 0xFF
        self.v_regs[0xF] = 1 if vx >= vy else 0

    @asm("SHR V{x}")
    def _shr(self, ins):
        """set Vx = Vx SHR 1, VF = the bit shifted out"""
        lsb = self.v_regs[ins.x] & 0x1
        self.v_regs[ins.x] >>= 1
        self.v_regs[0xF] = lsb

    @asm("SUBN V{x}, V{y}")
    def _subn_vx_vy(self, ins):
        """set Vx = Vy - Vx, VF = NOT borrow"""
        vx, vy = self.v_regs[ins.x], self.v_regs[ins.y]
        self.v_regs[ins.x] = (vy - vx) & 0xFF
        self.v_regs[0xF] = 1 if vy >= vx else 0

    @asm("SHL V{x}")
    def _shl(self, ins):
        """set Vx = Vx SHL 1, VF = the bit shifted out"""
        msb = (self.v_regs[ins.x] & 0x80) >> 7
        self.v_regs[ins.x] = (self.v_regs[ins.x] << 1) & 0xFF
        self.v_regs[0xF] = msb

    @asm("LD I, 0x{nnn:04x}")
    def _set_idx(self, ins):
        self.idx = ins.nnn

    @asm("JP V0, 0x{nnn:04x}")
    def _jump_plus(self, ins):
        self.pc = (self.v_regs[0x0] + ins.nnn) & 0xFFFF

    @asm("RND V{x}, 0x{nn:02x}")
    def _random_byte_and(self, ins):
        self.v_regs[ins.x] = random.randint(0, 255) & ins.nn

    @asm("DRW V{x}, V{y}, {n}")
    def _to_screen(self, ins):
        """display n-byte sprite starting at memory location I at (Vx, Vy), set VF = collision"""
        x, y = self.v_regs[ins.x], self.v_regs[ins.y]
        sprite = [self.mem[self.idx + i] for i in range(ins.n)]
        self.v_regs[0xF] = 0
        if self.display.draw_sprite(x, y, sprite):
            self.v_regs[0xF] = 1

    @asm("SKP V{x}")
    def _skip_if_pressed(self, ins):
        """skip the following instruction if the key corresponding to the hex value stored in Vx is pressed"""
        if self.keypad[self.v_regs[ins.x]]:
            self._goto_next_instruction()

    @asm("SKNP V{x}")
    def _skip_if_not_pressed(self, ins):
        """skip the following instruction if the key corresponding to the hex value stored in Vx is NOT pressed"""
        if not self.keypad[self.v_regs[ins.x]]:
            self._goto_next_instruction()

    @asm("LD V{x}, DT")
    def _set_vx_dt(self, ins):
        self.v_regs[ins.x] = self.timers.delay

    @asm("LD V{x}, K")
    def _wait_keypress(self, ins):
        """wait for a key press and store its value in Vx"""
        key = self.keypad.first()
        if key is None:
            self.awaiting_key = ins.x     # the following cycles only poll the keypad
            if DEBUG: print(f"waiting for a keypress to store in V{ins.x}")
        else:
            self.v_regs[ins.x] = key

    @asm("LD DT, V{x}")
    def _set_dt_vx(self, ins):
        self.timers.delay = self.v_regs[ins.x]

    @asm("LD ST, V{x}")
    def _set_st(self, ins):
        self.timers.sound = self.v_regs[ins.x]

    @asm("ADD I, V{x}")
    def _add_to_idx(self, ins):
        """set I = I + Vx, I may point past 0xFFF until it's used"""
        self.idx = (self.idx + self.v_regs[ins.x]) & 0xFFFF

    @asm("LD F, V{x}")
    def _select_char(self, ins):
        """set I to location of sprite for digit Vx"""
        self.idx = FONT_START_ADDRESS + self.v_regs[ins.x] * FONT_SPRITE_SIZE

    @asm("LD B, V{x}")
    def _bcd_repr(self, ins):
        """store the hundreds digit of Vx in memory at I, the tens digit at I+1, the ones digit at I+2"""
        value = self.v_regs[ins.x]
        self.mem[self.idx] = value // 100
        self.mem[self.idx + 1] = (value // 10) % 10
        self.mem[self.idx + 2] = value % 10

    @asm("LD [I], V{x}")
    def _store_vregs(self, ins):
        """store registers V0 through Vx (included) in memory starting at location I"""
        for offset in range(ins.x + 1):
            self.mem[self.idx + offset] = self.v_regs[offset]

    @asm("LD V{x}, [I]")
    def _load_vregs(self, ins):
        """read registers V0 through Vx (included) from memory starting at location I"""
        for offset in range(ins.x + 1):
            self.v_regs[offset] = self.mem[self.idx + offset]

    @asm("DATA 0x{opcode:04x}")
    def _unknown(self, ins):
        if DEBUG: print(f"unknown opcode 0x{ins.opcode:04x} skipped")

    def _goto_next_instruction(self):
        self.pc = (self.pc + 0x2) & 0xFFFF

    def _resume_keypress(self):
        key = self.keypad.first()
        if key is not None:
            self.v_regs[self.awaiting_key] = key
            self.awaiting_key = None

    def cycle(self):
        """emulate one machine cycle (fetch opcode, decode opcode, execute opcode)"""
        if self.awaiting_key is not None:
            self._resume_keypress()
            return
        # fetch (each instruction is two bytes long)
        self.opcode = self.mem[self.pc] << 8 | self.mem[self.pc + 1]
        self._goto_next_instruction()
        # decode + execute
        instruction = decode(self.opcode)
        self.instructions[instruction.op](instruction)

    def frame(self, cycles=CYCLES_PER_FRAME):
        """
        run one display frame: a batch of cycles, then a single timer tick
        return True if the display has to be refreshed
        """
        for _ in range(cycles):
            self.cycle()
        self.timers.tick()
        return self.display.take_dirty()
