from regbench import benchmark, diagnostics, exceptions, interfaces, registration, utils
from scripts import align as align_script
