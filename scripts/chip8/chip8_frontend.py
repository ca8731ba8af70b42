# pygame front-end for the CHIP-8 machine in chip8.py
# it loads the ROM, paints the display buffer, feeds the keypad and drives the buzzer
#
# CHIP-8 Hex Keypad    PC Keyboard
#  1 2 3 C             1 2 3 4
#  4 5 6 D      ->     Q W E R
#  7 8 9 E             A S D F
#  A 0 B F             Z X C V


import argparse
import array
import sys

import os
os.environ["PYGAME_HIDE_SUPPORT_PROMPT"] = "no welcome message"   # this env var disable pygame's welcome message when imported
import pygame
from pygame.locals import (
    K_1, K_2, K_3, K_4,
    K_q, K_w, K_e, K_r,
    K_a, K_s, K_d, K_f,
    K_z, K_x, K_c, K_v,
)

from chip8 import (
    CYCLES_PER_FRAME, DEBUG, FRAMES_PER_SECOND, SCREEN_HEIGHT, SCREEN_WIDTH,
    Chip8, Chip8Error,
)


# ******************** STATIC SECTION
KEY_MAPPINGS = {
    K_1: 0x1, K_2: 0x2, K_3: 0x3, K_4: 0xC,
    K_q: 0x4, K_w: 0x5, K_e: 0x6, K_r: 0xD,
    K_a: 0x7, K_s: 0x8, K_d: 0x9, K_f: 0xE,
    K_z: 0xA, K_x: 0x0, K_c: 0xB, K_v: 0xF,
}

SCALE = 10
VOLUME = 0.3
TONE_HZ = 440
SAMPLE_RATE = 44100
BLACK = pygame.Color(0, 0, 0, 255)
WHITE = pygame.Color(255, 255, 255, 255)


# ******************** UTILITIES SECTION
def get_args(argv=None):
    parser = argparse.ArgumentParser(description="CHIP-8 interpreter")
    parser.add_argument("-f", "--file", required=True, help="input rom file")
    parser.add_argument("-c", "--cycles", type=int, default=CYCLES_PER_FRAME, help="instructions executed per frame")
    parser.add_argument("--fps", type=int, default=FRAMES_PER_SECOND, help="frames (and timer ticks) per second")
    parser.add_argument("-s", "--scale", type=int, default=SCALE, help="size in pixels of a CHIP-8 pixel")
    parser.add_argument("--mute", action="store_true", help="disable the buzzer")
    parser.add_argument("--volume", type=float, default=VOLUME, help="buzzer volume, between 0.0 and 1.0")
    return parser.parse_args(argv)

def read_rom(path):
    with open(path, mode='rb') as f:
        return f.read()


# ******************** I/O SECTION
class Screen:
    def __init__(self, w=SCREEN_WIDTH, h=SCREEN_HEIGHT, s=SCALE, bg_color=BLACK, fg_color=WHITE):
        self.w, self.h, self.scale = w, h, s
        self.background = bg_color
        self.foreground = fg_color
        self.surface = pygame.display.set_mode(
            (w * self.scale, h * self.scale),
        )
        self.surface.fill(self.background)

    def render(self, display):
        """paint every cell of the display buffer, the change is visible after refresh"""
        self.surface.fill(self.background)
        for y, row in enumerate(display.rows()):
            for x, pixel in enumerate(row):
                if pixel:
                    pygame.draw.rect(
                        self.surface,
                        self.foreground,
                        (x * self.scale, y * self.scale, self.scale, self.scale)
                    )

    @staticmethod
    def refresh():
        pygame.display.flip()

class Beeper:
    """square wave tone looping forever, audible only while the sound timer runs"""

    def __init__(self, volume=VOLUME, muted=False):
        self.volume = max(0.0, min(volume, 1.0))
        self.muted = muted
        self.sound = None
        try:
            if pygame.mixer.get_init() is None:
                pygame.mixer.init(SAMPLE_RATE, -16, 1, 256)
        except pygame.error as e:
            if DEBUG: print(f"no audio device, the buzzer stays silent: {e}")
            return
        # the mixer may already be running with other settings, the wave has to match them
        sample_rate, _, channels = pygame.mixer.get_init()
        self.sound = pygame.mixer.Sound(buffer=self.square_wave(sample_rate=sample_rate, channels=channels))
        self.sound.set_volume(0)
        self.sound.play(-1)

    @staticmethod
    def square_wave(freq=TONE_HZ, sample_rate=SAMPLE_RATE, channels=1):
        """one period of a 16 bit signed square wave, as raw interleaved bytes"""
        half_period = max(sample_rate // (2 * freq), 1)
        amplitude = 32767
        samples = [amplitude] * half_period + [-amplitude] * half_period
        buf = array.array("h", [s for s in samples for _ in range(channels)])
        return buf.tobytes()

    def update(self, beeping):
        if self.sound is None:
            return
        self.sound.set_volume(self.volume if beeping and not self.muted else 0)

def handle_event(chip, event):
    """translate a pygame event into a keypad change, return False when the user wants to quit"""
    if event.type == pygame.QUIT:
        return False
    if event.type == pygame.KEYDOWN:
        if event.key == pygame.K_ESCAPE:
            return False
        if event.key in KEY_MAPPINGS:
            chip.keypad.press(KEY_MAPPINGS[event.key])
    elif event.type == pygame.KEYUP:
        if event.key in KEY_MAPPINGS:
            chip.keypad.release(KEY_MAPPINGS[event.key])
    return True


# ******************** ENTRY POINT SECTION
def main(argv=None):
    args = get_args(argv)
    chip = Chip8()
    try:
        chip.load_rom(read_rom(args.file))
    except (OSError, Chip8Error) as e:
        sys.exit(f"cannot load {args.file}: {e}")
    # pygame initialization, the mixer settings must be in place before pygame.init starts it
    pygame.mixer.pre_init(SAMPLE_RATE, -16, 1, 256)
    pygame.init()
    clock = pygame.time.Clock()
    pygame.display.set_caption(os.path.basename(args.file))
    # IO
    screen = Screen(s=args.scale)
    beeper = Beeper(args.volume, args.mute)
    screen.refresh()
    # emulation loop, cycles -> timers -> render, one round per frame
    run = True
    try:
        while run:
            clock.tick(args.fps)
            for event in pygame.event.get():
                run = handle_event(chip, event) and run
            if chip.frame(args.cycles):
                screen.render(chip.display)
                screen.refresh()
            beeper.update(chip.beeping)
    except Chip8Error as e:
        sys.exit(f"********** THE EMULATOR CRASHED ({e}) WITH THE FOLLOWING STATE\n{chip}")
    finally:
        pygame.quit()


if __name__ == "__main__":
    main()
