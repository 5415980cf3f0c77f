"""ScreenCaptureKit + Vision backend for macOS 14 and newer.

The system content-sharing picker selects the window, SCScreenshotManager
captures it and VNRecognizeTextRequest reads the text. Picker callbacks are
delivered through the AppKit event loop, which the worker drives via pump().
"""

import io
import queue
from typing import List, Optional

import objc
from AppKit import NSApplication, NSApplicationActivationPolicyAccessory, NSDate, NSDefaultRunLoopMode, \
    NSEventMaskAny, NSScreen
from Foundation import NSData, NSObject
from PIL import Image
from Quartz import CGDataProviderCopyData, CGImageGetBytesPerRow, CGImageGetDataProvider, CGImageGetHeight, \
    CGImageGetWidth, CGWindowListCopyWindowInfo, CGWindowListCreateDescriptionFromArray, kCGNullWindowID, \
    kCGWindowBounds, kCGWindowListExcludeDesktopElements, kCGWindowListOptionOnScreenOnly, kCGWindowName, \
    kCGWindowNumber, kCGWindowOwnerName
from ScreenCaptureKit import SCCaptureResolutionBest, SCContentSharingPicker, SCContentSharingPickerConfiguration, \
    SCContentSharingPickerModeSingleWindow, SCScreenshotManager, SCShareableContentStyleWindow, SCStreamConfiguration
import Vision

from ScreenLookup.ocr.capture_backend import CaptureBackend, CaptureTarget, WindowInfo
from ScreenLookup.util.communication.ocr_protocol import CaptureFailed, NormalizedPoint, NormalizedRect, \
    RecognitionFailed, TextObservation, WindowBounds
from ScreenLookup.util.logging_config import logger

CAPTURE_TIMEOUT = 10.0


def _describe(error) -> str:
    if error is None:
        return "Unknown error!"
    try:
        return str(error.localizedDescription())
    except AttributeError:
        return str(error)


def _bounds_from_dict(bounds) -> WindowBounds:
    return WindowBounds(
        x=float(bounds.get('X', 0)),
        y=float(bounds.get('Y', 0)),
        width=float(bounds.get('Width', 0)),
        height=float(bounds.get('Height', 0)),
    )


def _window_info(window) -> Optional[WindowInfo]:
    bounds = window.get(kCGWindowBounds)
    if bounds is None:
        return None
    return WindowInfo(
        window_id=int(window[kCGWindowNumber]),
        bounds=_bounds_from_dict(bounds),
        app_name=window.get(kCGWindowOwnerName),
        window_title=window.get(kCGWindowName),
    )


def _point(point) -> NormalizedPoint:
    return NormalizedPoint(x=float(point.x), y=float(point.y))


class PickerObserver(NSObject, protocols=[objc.protocolNamed("SCContentSharingPickerObserver")]):
    """Forwards picker outcomes to the owning backend."""

    def initWithBackend_(self, backend):
        self = objc.super(PickerObserver, self).init()
        if self is None:
            return None
        self.backend = backend
        return self

    def contentSharingPicker_didCancelForStream_(self, picker, stream):
        logger.info("Window picker cancelled")
        self.backend.picker_cancelled()

    def contentSharingPickerStartDidFailWithError_(self, error):
        logger.error(f"Window picker failed to start: {_describe(error)}")
        self.backend.picker_failed(_describe(error))

    def contentSharingPicker_didUpdateWithFilter_forStream_(self, picker, content_filter, stream):
        self.backend.picker_selected(content_filter)


class MacOSCaptureBackend(CaptureBackend):
    def __init__(self):
        super().__init__()
        self.app = None
        self.picker = None
        self.observer = None

    def start(self) -> None:
        self.app = NSApplication.sharedApplication()
        # Accessory apps get no Dock icon but can still present the picker.
        self.app.setActivationPolicy_(NSApplicationActivationPolicyAccessory)
        self.app.finishLaunching()
        self.picker = SCContentSharingPicker.sharedPicker()
        self.observer = PickerObserver.alloc().initWithBackend_(self)
        self.picker.addObserver_(self.observer)
        logger.debug("ScreenCaptureKit picker observer registered")

    def pump(self, timeout: float = 0.0) -> None:
        if self.app is None:
            return
        with objc.autorelease_pool():
            while True:
                event = self.app.nextEventMatchingMask_untilDate_inMode_dequeue_(
                    NSEventMaskAny, NSDate.dateWithTimeIntervalSinceNow_(timeout), NSDefaultRunLoopMode, True)
                if event is None:
                    break
                self.app.sendEvent_(event)
                timeout = 0.0

    def default_scale_factor(self) -> float:
        screen = NSScreen.mainScreen()
        if screen is None:
            return super().default_scale_factor()
        return float(screen.backingScaleFactor())

    # Picker -----------------------------------------------------------------

    def present_picker(self) -> None:
        configuration = SCContentSharingPickerConfiguration.alloc().init()
        configuration.setAllowedPickerModes_(SCContentSharingPickerModeSingleWindow)
        self.picker.setDefaultConfiguration_(configuration)
        self.picker.setActive_(True)
        self.picker.presentPickerUsingContentStyle_(SCShareableContentStyleWindow)

    def picker_selected(self, content_filter) -> None:
        frame = content_filter.contentRect()
        target = CaptureTarget(
            content_rect=WindowBounds(
                x=float(frame.origin.x),
                y=float(frame.origin.y),
                width=float(frame.size.width),
                height=float(frame.size.height),
            ),
            handle=content_filter,
            point_pixel_scale=float(content_filter.pointPixelScale()),
        )
        logger.info(f"Window selected: {target.content_rect}")
        self._emit_selected(target)

    def picker_cancelled(self) -> None:
        self._emit_cancelled()

    def picker_failed(self, cause: str) -> None:
        self._emit_failed(cause)

    # Capture ----------------------------------------------------------------

    def capture_image(self, target: CaptureTarget, width: int, height: int):
        results: "queue.Queue" = queue.Queue()

        def completion_handler(image, error):
            results.put((image, error))

        with objc.autorelease_pool():
            configuration = SCStreamConfiguration.alloc().init()
            configuration.setWidth_(width)
            configuration.setHeight_(height)
            configuration.setScalesToFit_(False)
            configuration.setShowsCursor_(False)
            configuration.setCaptureResolution_(SCCaptureResolutionBest)
            SCScreenshotManager.captureImageWithFilter_configuration_completionHandler_(
                target.handle, configuration, completion_handler)

        try:
            cg_image, error = results.get(timeout=CAPTURE_TIMEOUT)
        except queue.Empty:
            raise CaptureFailed("Screenshot timed out")
        if error is not None or cg_image is None:
            raise CaptureFailed(_describe(error))

        with objc.autorelease_pool():
            image_width = CGImageGetWidth(cg_image)
            image_height = CGImageGetHeight(cg_image)
            raw_data = CGDataProviderCopyData(CGImageGetDataProvider(cg_image))
            bpr = CGImageGetBytesPerRow(cg_image)
            img = Image.frombuffer('RGBA', (image_width, image_height), bytes(raw_data), 'raw', 'BGRA', bpr, 1)
        return img

    def recognize_text(self, image, languages: List[str]) -> List[TextObservation]:
        buffer = io.BytesIO()
        image.save(buffer, format='TIFF')
        image_bytes = buffer.getvalue()

        with objc.autorelease_pool():
            req = Vision.VNRecognizeTextRequest.alloc().init()
            req.setRecognitionLevel_(Vision.VNRequestTextRecognitionLevelAccurate)
            req.setUsesLanguageCorrection_(True)
            req.setRecognitionLanguages_(list(languages))

            ns_data = NSData.dataWithBytes_length_(image_bytes, len(image_bytes))
            handler = Vision.VNImageRequestHandler.alloc().initWithData_options_(ns_data, None)
            success, error = handler.performRequests_error_([req], None)
            if not success:
                raise RecognitionFailed(_describe(error))

            observations = []
            for result in req.results() or []:
                candidates = result.topCandidates_(1)
                if not candidates:
                    continue
                candidate = candidates[0]
                box = result.boundingBox()
                observations.append(TextObservation(
                    text=str(candidate.string()),
                    confidence=float(candidate.confidence()),
                    bounding_box=NormalizedRect(
                        x=float(box.origin.x),
                        y=float(box.origin.y),
                        width=float(box.size.width),
                        height=float(box.size.height),
                    ),
                    top_left=_point(result.topLeft()),
                    top_right=_point(result.topRight()),
                    bottom_right=_point(result.bottomRight()),
                    bottom_left=_point(result.bottomLeft()),
                ))
        return observations

    # Window list ------------------------------------------------------------

    def list_windows(self) -> List[WindowInfo]:
        with objc.autorelease_pool():
            window_list = CGWindowListCopyWindowInfo(
                kCGWindowListOptionOnScreenOnly | kCGWindowListExcludeDesktopElements, kCGNullWindowID)
            windows = [_window_info(window) for window in window_list or []]
        return [window for window in windows if window is not None]

    def window_bounds(self, window_id: int) -> Optional[WindowBounds]:
        with objc.autorelease_pool():
            window_list = CGWindowListCreateDescriptionFromArray([window_id])
            if not window_list:
                return None
            info = _window_info(window_list[0])
        return info.bounds if info else None
