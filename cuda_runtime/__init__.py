"""CUDA runtime: device context, buffer cache, kernel engine and cache coordination."""

from cuda_runtime.backend import DeviceBackend as DeviceBackend
from cuda_runtime.backend import DeviceBuffer as DeviceBuffer
from cuda_runtime.coordinator import CacheAgent as CacheAgent
from cuda_runtime.coordinator import CacheCoordinator as CacheCoordinator
from cuda_runtime.coordinator import CacheState as CacheState
from cuda_runtime.coordinator import LocalTransport as LocalTransport
from cuda_runtime.coordinator import RetryPolicy as RetryPolicy
from cuda_runtime.cuda_backend import HAS_CUPY as HAS_CUPY
from cuda_runtime.cuda_backend import CUDABackend as CUDABackend
from cuda_runtime.cuda_backend import CUDABuffer as CUDABuffer
from cuda_runtime.cuda_executor import CUDAExecutor as CUDAExecutor
from cuda_runtime.cuda_executor import run_kernel as run_kernel
from cuda_runtime.device_cache import DeviceBufferCache as DeviceBufferCache
from cuda_runtime.device_context import DeviceContext as DeviceContext
from cuda_runtime.kernel import ArrayArg as ArrayArg
from cuda_runtime.kernel import KernelDescriptor as KernelDescriptor
from cuda_runtime.kernel import ModuleRef as ModuleRef
from cuda_runtime.kernel import ScalarArg as ScalarArg
from cuda_runtime.kernel import kernel_arg as kernel_arg
from cuda_runtime.runtime_config import DEFAULT_CONFIG as DEFAULT_CONFIG
from cuda_runtime.runtime_config import RuntimeConfig as RuntimeConfig
